import itertools
import logging
import re
import secrets
import time
import urllib.parse

from pathlib import Path
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

import yaml

from data.models import CalloutInfo
from data.models import KIND_CALLOUT
from data.models import KIND_FILE
from data.models import KIND_IMAGE
from data.models import KIND_SUB_DOCUMENT
from data.models import PendingContent
from data.models import TransformedMarkdown


logger = logging.getLogger(__name__)


IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp", ".svg"}

COLOR_ENUMS = {
    "red": 1,
    "orange": 2,
    "yellow": 3,
    "green": 4,
    "blue": 5,
    "purple": 6,
    "gray": 7
}

# callout type -> (color, emoji id)
CALLOUT_STYLES: Dict[str, Tuple[str, str]] = {
    "note": ("blue", "memo"),
    "info": ("blue", "information_source"),
    "abstract": ("blue", "clipboard"),
    "summary": ("blue", "clipboard"),
    "todo": ("blue", "ballot_box_with_check"),
    "tip": ("green", "bulb"),
    "hint": ("green", "bulb"),
    "success": ("green", "white_check_mark"),
    "check": ("green", "white_check_mark"),
    "question": ("yellow", "question"),
    "faq": ("yellow", "question"),
    "warning": ("orange", "warning"),
    "caution": ("orange", "warning"),
    "attention": ("orange", "warning"),
    "failure": ("red", "x"),
    "danger": ("red", "no_entry"),
    "error": ("red", "x"),
    "bug": ("red", "x"),
    "example": ("purple", "book"),
    "quote": ("gray", "speech_balloon")
}
DEFAULT_CALLOUT_STYLE = ("blue", "pushpin")


class MarkdownProcessor:
    """Replace local assets, sub-documents and callouts by placeholders."""

    FRONT_MATTER_PATTERN = re.compile(r"\A---\s*\n(?P<body>[\s\S]*?)\n---\s*(?:\n|\Z)")
    HEADING_PATTERN = re.compile(r"^\s{0,3}#\s+(?P<title>.+?)\s*#*\s*$", flags = re.MULTILINE)
    CALLOUT_HEADER_PATTERN = re.compile(r"^>\s*\[!(?P<type>[^\]]+)\](?P<fold>[-+]?)\s*(?P<title>.*)$")
    LINK_PATTERN = re.compile(r"(?P<bang>!?)\[(?P<text>[^\]]*)\]\((?P<url>[^)\s]+)(?:\s+\"[^\"]*\")?\)")

    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def transform(self, md_text: str, base_path: str, default_title: str = "") -> TransformedMarkdown:
        """Transform markdown into placeholder markdown plus deferred contents.

        Args:
            md_text: Original markdown text.
            base_path: Directory used to resolve relative local paths.
            default_title: Title used when neither front matter nor heading sets one.
        """

        front_matter, body = self.split_front_matter(md_text = md_text)
        pending: List[PendingContent] = []

        body = self._replace_callouts(body, pending)
        body = self._replace_links(body, base_path, pending)

        positions = {}
        for item in pending:
            offset = body.find(item.placeholder)
            positions[item.placeholder] = offset if offset >= 0 else len(body)
        ordered = sorted(pending, key = lambda item: positions[item.placeholder])
        pending_contents = [
            PendingContent(
                placeholder = item.placeholder,
                original_path = item.original_path,
                display_name = item.display_name,
                kind = item.kind,
                position = index,
                callout = item.callout
            )
            for index, item in enumerate(ordered)
        ]

        title = front_matter.get("title", "")
        if not title:
            heading = self.HEADING_PATTERN.search(body)
            title = heading.group("title") if heading else default_title

        return TransformedMarkdown(
            content = body,
            pending_contents = pending_contents,
            title = title or "Untitled",
            feishu_url = front_matter.get("feishu_url", "")
        )

    def split_front_matter(self, md_text: str) -> Tuple[Dict[str, str], str]:
        """Split YAML front matter from markdown body.

        Top level scalar values are returned as strings. Front matter that is
        not a YAML mapping is dropped from the body and yields no values.

        Args:
            md_text: Markdown text.
        """

        match = self.FRONT_MATTER_PATTERN.match(md_text)
        if not match:
            return {}, md_text

        body = md_text[match.end():]
        try:
            loaded = yaml.safe_load(match.group("body"))
        except yaml.YAMLError as exc:
            logger.warning("Ignore invalid front matter: %s", str(exc))
            return {}, body
        if not isinstance(loaded, dict):
            return {}, body

        values: Dict[str, str] = {}
        for key, value in loaded.items():
            if isinstance(value, (dict, list)):
                continue
            values[str(key)] = "" if value is None else str(value).strip()
        return values, body

    def new_placeholder(self) -> str:
        timestamp = int(time.time() * 1000)
        return f"__OB_CONTENT_{timestamp}_{next(self._counter)}{secrets.token_hex(3)}__"

    def _replace_callouts(self, body: str, pending: List[PendingContent]) -> str:
        lines = body.split("\n")
        output: List[str] = []
        index = 0
        in_fence = False
        while index < len(lines):
            line = lines[index]
            if line.lstrip().startswith("```"):
                in_fence = not in_fence
            header = None if in_fence else self.CALLOUT_HEADER_PATTERN.match(line)
            if header is None:
                output.append(line)
                index += 1
                continue

            index += 1
            content_lines = []
            while index < len(lines) and lines[index].startswith(">"):
                content_lines.append(re.sub(r"^>\s?", "", lines[index]))
                index += 1

            callout_type = header.group("type").strip().lower()
            color, emoji_id = CALLOUT_STYLES.get(callout_type, DEFAULT_CALLOUT_STYLE)
            color_enum = COLOR_ENUMS[color]
            title = header.group("title").strip() or callout_type.capitalize()
            placeholder = self.new_placeholder()
            pending.append(PendingContent(
                placeholder = placeholder,
                original_path = "",
                display_name = title,
                kind = KIND_CALLOUT,
                callout = CalloutInfo(
                    callout_type = callout_type,
                    title = title.replace("**", "*"),
                    content = "\n".join(content_lines).strip("\n"),
                    foldable = header.group("fold") == "-",
                    background_color = color_enum,
                    border_color = color_enum,
                    text_color = color_enum,
                    emoji_id = emoji_id
                )
            ))
            output.append(placeholder)
        return "\n".join(output)

    def _replace_links(self, body: str, base_path: str, pending: List[PendingContent]) -> str:
        def _replace(match: re.Match) -> str:
            url = match.group("url").strip()
            local_path = self._resolve_local_path(source_url = url, base_path = base_path)
            if local_path is None:
                return match.group(0)

            suffix = local_path.suffix.lower()
            if match.group("bang") or suffix in IMAGE_SUFFIXES:
                kind = KIND_IMAGE
            elif suffix == ".md":
                kind = KIND_SUB_DOCUMENT
            else:
                kind = KIND_FILE

            display_name = local_path.name
            if kind == KIND_SUB_DOCUMENT:
                display_name = match.group("text").strip() or local_path.stem

            placeholder = self.new_placeholder()
            pending.append(PendingContent(
                placeholder = placeholder,
                original_path = str(local_path),
                display_name = display_name,
                kind = kind
            ))
            return placeholder

        return self.LINK_PATTERN.sub(_replace, body)

    def _resolve_local_path(self, source_url: str, base_path: str) -> Optional[Path]:
        """Resolve one link target to an existing local file, or None.

        Args:
            source_url: Link target in markdown.
            base_path: Base directory.
        """

        if re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*:", source_url) and not re.match(r"^[a-zA-Z]:[\\/]", source_url):
            return None
        if source_url.startswith("#"):
            return None

        candidate = Path(urllib.parse.unquote(source_url.split("#", 1)[0]))
        if not candidate.is_absolute():
            candidate = Path(base_path) / candidate
        candidate = candidate.resolve()
        if not candidate.is_file():
            return None
        return candidate
