import copy
import re
import urllib.parse

from typing import List
from typing import Optional
from typing import Tuple


TEXT_BEARING_FIELDS = (
    "text",
    "heading1",
    "heading2",
    "heading3",
    "heading4",
    "heading5",
    "heading6",
    "heading7",
    "heading8",
    "heading9",
    "bullet",
    "ordered"
)

PLACEHOLDER_MARKERS = ("OB_CONTENT_", "FEISHU_FILE_")

INLINE_MARKDOWN_PATTERN = re.compile(
    (
        r"\[(?P<link_text>[^\]]+)\]\((?P<link_url>[^)]+)\)"
        r"|\*\*(?P<bold>[^*]+)\*\*"
        r"|==(?P<highlight>[^=]+)=="
        r"|__(?P<bold_underline>[^_]+)__"
        r"|`(?P<inline_code>[^`]+)`"
        r"|~~(?P<strike>[^~]+)~~"
        r"|\*(?P<italic>[^*\n]+)\*"
        r"|_(?P<italic_underscore>[^_\n]+)_"
    )
)

STYLE_BY_GROUP = {
    "bold": {"bold": True},
    "highlight": {"bold": True},
    "bold_underline": {"bold": True},
    "inline_code": {"inline_code": True},
    "strike": {"strikethrough": True},
    "italic": {"italic": True},
    "italic_underscore": {"italic": True}
}


def clean_placeholder(placeholder: str) -> str:
    """Strip surrounding double underscores from one placeholder token.

    Args:
        placeholder: Placeholder token such as __OB_CONTENT_1_ab__.
    """

    value = placeholder
    if value.startswith("__"):
        value = value[2:]
    if value.endswith("__"):
        value = value[:-2]
    return value


def placeholder_forms(placeholder: str) -> List[str]:
    """Return the forms a placeholder may take after remote import.

    Markdown import renders __token__ as bold text, so the token may show up
    without underscores, sometimes with a leading exclamation mark left over
    from image syntax.

    Args:
        placeholder: Placeholder token.
    """

    clean = clean_placeholder(placeholder)
    return [placeholder, f"!{clean}", clean]


def cleanup_forms(placeholder: str) -> List[str]:
    """Return placeholder forms to strip during cleanup, longest first.

    Args:
        placeholder: Placeholder token.
    """

    clean = clean_placeholder(placeholder)
    return [placeholder, f"!{clean}!", f"!{clean}", f"{clean}!", clean]


def form_pattern(form: str) -> re.Pattern:
    """Compile one placeholder form so it cannot match inside a longer token.

    A form ending in a letter or digit must not be followed by another word
    character, so OB_CONTENT_1 never matches within OB_CONTENT_10.

    Args:
        form: Literal placeholder form.
    """

    pattern = re.escape(form)
    if form[-1:].isalnum():
        pattern += r"(?![A-Za-z0-9_])"
    return re.compile(pattern)


def contains_placeholder(text: str, placeholder: str) -> bool:
    """Tell whether any tolerated form of the placeholder occurs in text.

    Args:
        text: Block text.
        placeholder: Placeholder token.
    """

    return any(form_pattern(form).search(text) for form in placeholder_forms(placeholder))


def text_field_of(block: dict) -> Optional[str]:
    """Return the text-bearing field name of one block, or None.

    Args:
        block: Raw block dict.
    """

    for field in TEXT_BEARING_FIELDS:
        if isinstance(block.get(field), dict):
            return field
    return None


def block_elements(block: dict) -> List[dict]:
    field = text_field_of(block)
    if field is None:
        return []
    elements = block[field].get("elements")
    return elements if isinstance(elements, list) else []


def extract_block_text(block: dict) -> str:
    """Concatenate text_run contents of one text-bearing block.

    Args:
        block: Raw block dict.
    """

    parts = []
    for element in block_elements(block):
        text_run = element.get("text_run") if isinstance(element, dict) else None
        if isinstance(text_run, dict):
            parts.append(str(text_run.get("content") or ""))
    return "".join(parts)


def find_placeholder(text: str, placeholder: str) -> Optional[Tuple[int, int]]:
    """Locate the first tolerated form of a placeholder inside text.

    Args:
        text: Block text.
        placeholder: Placeholder token.
    """

    for form in cleanup_forms(placeholder):
        found = form_pattern(form).search(text)
        if found:
            return found.start(), found.end()
    return None


def text_after_placeholder(text: str, placeholder: str) -> str:
    """Return text that follows the placeholder, or empty string.

    Args:
        text: Block text.
        placeholder: Placeholder token.
    """

    span = find_placeholder(text = text, placeholder = placeholder)
    if span is None:
        return ""
    return text[span[1]:]


def _strip_forms(content: str, placeholders: List[str]) -> str:
    for placeholder in placeholders:
        for form in cleanup_forms(placeholder):
            content = form_pattern(form).sub("", content)
    return content


def build_text_elements_without_placeholder(elements: List[dict], placeholders: List[str]) -> List[dict]:
    """Copy text elements with every form of the given placeholders removed.

    Args:
        elements: Original block elements.
        placeholders: Placeholder tokens to remove.
    """

    result: List[dict] = []
    for element in elements:
        item = copy.deepcopy(element)
        text_run = item.get("text_run")
        if isinstance(text_run, dict):
            content = _strip_forms(str(text_run.get("content") or ""), placeholders)
            if not content:
                continue
            text_run["content"] = content
        result.append(item)

    if not result:
        result.append({"text_run": {"content": ""}})
    return result


def build_text_elements_with_link(
    elements: List[dict],
    placeholder: str,
    link_text: str,
    url: str
) -> List[dict]:
    """Replace the placeholder inside text elements by one hyperlink run.

    Text around the placeholder keeps its original style.

    Args:
        elements: Original block elements.
        placeholder: Placeholder token.
        link_text: Visible link text.
        url: Target URL, encoded before being stored.
    """

    result: List[dict] = []
    replaced = False
    for element in elements:
        text_run = element.get("text_run") if isinstance(element, dict) else None
        if replaced or not isinstance(text_run, dict):
            result.append(copy.deepcopy(element))
            continue

        content = str(text_run.get("content") or "")
        span = find_placeholder(text = content, placeholder = placeholder)
        if span is None:
            result.append(copy.deepcopy(element))
            continue

        style = copy.deepcopy(text_run.get("text_element_style") or {})
        before = content[:span[0]]
        after = content[span[1]:]
        if before:
            result.append(_text_run(before, style))
        link_style = copy.deepcopy(style)
        link_style["link"] = {"url": urllib.parse.quote(url, safe = "")}
        result.append(_text_run(link_text, link_style))
        if after:
            result.append(_text_run(after, style))
        replaced = True

    return result


def build_text_elements_from_markdown(text: str) -> List[dict]:
    """Build Feishu text elements from lightweight inline markdown.

    Args:
        text: Inline markdown text.
    """

    if not text:
        return [{"text_run": {"content": ""}}]

    elements: List[dict] = []
    cursor = 0
    for match in INLINE_MARKDOWN_PATTERN.finditer(text):
        start, end = match.span()
        if start > cursor:
            elements.append({"text_run": {"content": text[cursor:start]}})

        if match.group("link_text") is not None:
            elements.append(_text_run(
                match.group("link_text"),
                {"link": {"url": urllib.parse.quote(match.group("link_url"), safe = "")}}
            ))
        else:
            for group, style in STYLE_BY_GROUP.items():
                if match.group(group) is not None:
                    elements.append(_text_run(match.group(group), dict(style)))
                    break

        cursor = end

    if cursor < len(text):
        elements.append({"text_run": {"content": text[cursor:]}})
    return elements


def build_text_block(elements: List[dict]) -> dict:
    return {
        "block_type": 2,
        "text": {
            "elements": elements
        }
    }


def _text_run(content: str, style: dict) -> dict:
    run: dict = {"content": content}
    if style:
        run["text_element_style"] = style
    return {"text_run": run}
