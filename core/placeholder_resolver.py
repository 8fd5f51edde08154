import asyncio
import logging
import os

from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from core.exceptions import AppError
from data.models import KIND_CALLOUT
from data.models import KIND_SUB_DOCUMENT
from data.models import PendingContent
from data.models import PlaceholderMatch
from data.models import ProgressSink
from data.models import ResolveReport
from data.models import UNKNOWN_POSITION
from integrations.feishu_api import BLOCK_TYPE_CALLOUT
from integrations.feishu_api import BLOCK_TYPE_FILE
from integrations.feishu_api import BLOCK_TYPE_IMAGE
from integrations.feishu_api import BLOCK_TYPE_VIEW
from integrations.feishu_api import DocumentService
from integrations.feishu_api import DriveService
from utils.retry_policy import RetryPolicy
from utils.retry_policy import is_any_error
from utils.retry_policy import run_with_retry
from utils.text_elements import PLACEHOLDER_MARKERS
from utils.text_elements import block_elements
from utils.text_elements import build_text_block
from utils.text_elements import build_text_elements_from_markdown
from utils.text_elements import build_text_elements_with_link
from utils.text_elements import build_text_elements_without_placeholder
from utils.text_elements import contains_placeholder
from utils.text_elements import extract_block_text
from utils.text_elements import text_after_placeholder
from utils.text_elements import text_field_of


logger = logging.getLogger(__name__)

SEPARATORS = {"---", "***", "___"}

SubDocumentResolver = Callable[[PendingContent], Awaitable[str]]


def read_local_file(path: str) -> bytes:
    with open(path, "rb") as fp:
        return fp.read()


def locate_placeholders(blocks: List[dict], pending_contents: List[PendingContent]) -> List[PlaceholderMatch]:
    """Find blocks whose text carries any form of a pending placeholder.

    Args:
        blocks: Full block list of one document.
        pending_contents: Deferred contents to look for.
    """

    if not pending_contents:
        return []

    positions: Dict[str, Tuple[str, int]] = {}
    for block in blocks:
        for index, child_id in enumerate(block.get("children") or []):
            positions[child_id] = (block.get("block_id", ""), index)

    wanted = {item.placeholder: item for item in pending_contents}
    matches: List[PlaceholderMatch] = []
    for block in blocks:
        if not wanted:
            break
        if text_field_of(block) is None:
            continue
        text = extract_block_text(block)
        if not any(marker in text for marker in PLACEHOLDER_MARKERS):
            continue

        for placeholder in list(wanted):
            if not contains_placeholder(text, placeholder):
                continue
            block_id = block.get("block_id", "")
            parent_id, index = positions.get(block_id, (block.get("parent_id", ""), 0))
            matches.append(PlaceholderMatch(
                block_id = block_id,
                parent_block_id = parent_id,
                block_index = index,
                placeholder = placeholder,
                content = wanted.pop(placeholder)
            ))

    return matches


def sort_matches(matches: List[PlaceholderMatch]) -> List[PlaceholderMatch]:
    """Order matches by authoring position, then by block index.

    Args:
        matches: Located placeholder matches.
    """

    return sorted(
        matches,
        key = lambda item: (
            item.content.position if item.content.position is not None else UNKNOWN_POSITION,
            item.block_index
        )
    )


class _InsertionTracker:
    """Track blocks inserted per parent so later indices can be shifted."""

    def __init__(self) -> None:
        self._inserted: Dict[str, List[int]] = {}

    def current_index(self, parent_id: str, original_index: int) -> int:
        inserted = self._inserted.get(parent_id, [])
        return original_index + sum(1 for item in inserted if item <= original_index)

    def record(self, parent_id: str, original_index: int) -> None:
        self._inserted.setdefault(parent_id, []).append(original_index)


class PlaceholderResolver:
    """Bind deferred contents to their placeholders inside one remote document.

    Args:
        document_service: Block API service.
        drive_service: Drive API service used for media upload.
        sub_document_resolver: Coroutine turning one sub-document into a URL.
        read_file: Function reading one local file as bytes.
        sleep: Awaitable sleep used by delete retries.
    """

    def __init__(
        self,
        document_service: DocumentService,
        drive_service: DriveService,
        sub_document_resolver: Optional[SubDocumentResolver] = None,
        read_file: Callable[[str], bytes] = read_local_file,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self.document_service = document_service
        self.drive_service = drive_service
        self.sub_document_resolver = sub_document_resolver
        self.read_file = read_file
        self.sleep = sleep

    async def resolve(
        self,
        document_id: str,
        pending_contents: List[PendingContent],
        progress: Optional[ProgressSink] = None
    ) -> ResolveReport:
        """Locate, bind and clean up every placeholder of one document.

        Args:
            document_id: Target document id.
            pending_contents: Deferred contents produced by the transformer.
            progress: Optional progress sink.
        """

        report = ResolveReport()
        if not pending_contents:
            return report

        notify = progress or (lambda message: None)
        blocks = await self.document_service.get_all_blocks(document_id = document_id)
        matches = sort_matches(locate_placeholders(blocks = blocks, pending_contents = pending_contents))
        report.located = len(matches)
        logger.info(
            "Located placeholders: document_id = %s, located = %d, expected = %d",
            document_id,
            len(matches),
            len(pending_contents)
        )

        found = {item.placeholder for item in matches}
        for item in pending_contents:
            if item.placeholder not in found:
                logger.warning("Placeholder not found in document: %s (%s)", item.placeholder, item.display_name)

        blocks_by_id = {block.get("block_id"): block for block in blocks}
        sub_documents = [item for item in matches if item.content.kind == KIND_SUB_DOCUMENT]
        callouts = [item for item in matches if item.content.kind == KIND_CALLOUT]
        attachments = [
            item for item in matches
            if item.content.kind not in {KIND_SUB_DOCUMENT, KIND_CALLOUT}
        ]

        for match in sub_documents:
            notify(f"Sub-document: {match.content.display_name}")
            if await self._bind_sub_document(document_id, match, blocks_by_id.get(match.block_id, {})):
                report.bound += 1
            else:
                report.failed.append(match.placeholder)

        tracker = _InsertionTracker()
        for match in sorted(callouts, key = lambda item: (item.parent_block_id, item.block_index)):
            notify(f"Callout: {match.content.display_name}")
            if await self._bind_callout(document_id, match, tracker):
                report.bound += 1
            else:
                report.failed.append(match.placeholder)

        payloads = await self._read_attachments(attachments)
        total = len(attachments)
        for index, match in enumerate(attachments, start = 1):
            notify(f"Attachment {index}/{total}: {match.content.display_name}")
            payload = payloads.get(match.placeholder)
            if payload is None:
                report.failed.append(match.placeholder)
                continue
            if await self._bind_attachment(document_id, match, payload, tracker):
                report.bound += 1
            else:
                report.failed.append(match.placeholder)

        notify("Cleaning up placeholders")
        report.remaining = await self.cleanup(document_id = document_id, pending_contents = pending_contents)
        logger.info(
            "Placeholder resolution done: bound = %d, failed = %d, remaining = %d",
            report.bound,
            len(report.failed),
            len(report.remaining)
        )
        return report

    async def cleanup(self, document_id: str, pending_contents: List[PendingContent]) -> List[str]:
        """Remove leftover placeholder text and return placeholders that survived.

        Args:
            document_id: Target document id.
            pending_contents: Deferred contents of this document.
        """

        blocks = await self.document_service.get_all_blocks(document_id = document_id)
        matches = locate_placeholders(blocks = blocks, pending_contents = pending_contents)
        if not matches:
            return []

        blocks_by_id = {block.get("block_id"): block for block in blocks}
        grouped: Dict[str, List[PlaceholderMatch]] = {}
        for match in matches:
            grouped.setdefault(match.block_id, []).append(match)

        survived: List[str] = []
        for block_id, block_matches in grouped.items():
            block = blocks_by_id.get(block_id, {})
            placeholders = [item.placeholder for item in block_matches]
            try:
                await self._cleanup_block(document_id, block, block_matches[0], placeholders)
            except AppError as exc:
                logger.warning("Placeholder cleanup failed: block_id = %s, err = %s", block_id, str(exc))
                survived.extend(placeholders)
        return survived

    async def _cleanup_block(
        self,
        document_id: str,
        block: dict,
        match: PlaceholderMatch,
        placeholders: List[str]
    ) -> None:
        text = extract_block_text(block)
        after = text_after_placeholder(text = text, placeholder = match.placeholder)
        stripped_after = after.strip()
        trailing = after.lstrip("\n")
        moves_content = stripped_after in SEPARATORS or (
            after.startswith("\n") and trailing.strip() and not trailing.startswith("!")
        )

        if moves_content:
            await self.delete_block(document_id, match.block_id, match.parent_block_id)
            await self.document_service.create_children(
                document_id = document_id,
                parent_id = match.parent_block_id,
                children = [build_text_block(build_text_elements_from_markdown(trailing.strip()))],
                index = match.block_index
            )
            return

        field = text_field_of(block)
        elements = build_text_elements_without_placeholder(block_elements(block), placeholders)
        try:
            await self.document_service.patch_block(
                document_id = document_id,
                block_id = match.block_id,
                body = {"update_text_elements": {"elements": elements}}
            )
        except AppError as exc:
            logger.warning(
                "Patch %s block failed, deleting placeholder block %s: %s",
                field,
                match.block_id,
                str(exc)
            )
            await self.delete_block(document_id, match.block_id, match.parent_block_id)

    async def delete_block(self, document_id: str, block_id: str, parent_id: str) -> None:
        """Delete one block by looking up its current index in the parent.

        Args:
            document_id: Document id.
            block_id: Block to delete.
            parent_id: Parent block id.
        """

        parent = await self.document_service.get_block(document_id = document_id, block_id = parent_id)
        children = parent.get("children") or []
        if block_id not in children:
            logger.info("Block already removed: %s", block_id)
            return
        index = children.index(block_id)

        async def _delete() -> None:
            await self.document_service.batch_delete_children(
                document_id = document_id,
                parent_id = parent_id,
                start_index = index,
                end_index = index + 1
            )

        await run_with_retry(
            operation = _delete,
            policy = RetryPolicy(max_attempts = 3, base_delay = 1.0, max_delay = 5.0, retryable = is_any_error),
            label = f"delete block {block_id}",
            sleep = self.sleep
        )

    async def _bind_sub_document(self, document_id: str, match: PlaceholderMatch, block: dict) -> bool:
        if self.sub_document_resolver is None:
            logger.warning("No sub-document resolver configured, skip %s", match.content.display_name)
            return False
        try:
            url = await self.sub_document_resolver(match.content)
            elements = build_text_elements_with_link(
                elements = block_elements(block),
                placeholder = match.placeholder,
                link_text = match.content.display_name,
                url = url
            )
            await self.document_service.patch_block(
                document_id = document_id,
                block_id = match.block_id,
                body = {"update_text_elements": {"elements": elements}}
            )
        except AppError as exc:
            logger.error("Sub-document %s failed: %s", match.content.display_name, str(exc))
            return False
        logger.info("Sub-document linked: %s -> %s", match.content.display_name, url)
        return True

    async def _bind_callout(self, document_id: str, match: PlaceholderMatch, tracker: _InsertionTracker) -> bool:
        callout = match.content.callout
        if callout is None:
            logger.warning("Callout placeholder without payload: %s", match.placeholder)
            return False

        index = tracker.current_index(match.parent_block_id, match.block_index)
        try:
            created = await self.document_service.create_children(
                document_id = document_id,
                parent_id = match.parent_block_id,
                children = [{
                    "block_type": BLOCK_TYPE_CALLOUT,
                    "callout": {
                        "background_color": callout.background_color,
                        "border_color": callout.border_color,
                        "emoji_id": callout.emoji_id
                    }
                }],
                index = index
            )
            callout_id = created[0].get("block_id", "")
            children = []
            if callout.title:
                children.append(build_text_block([{
                    "text_run": {
                        "content": callout.title,
                        "text_element_style": {"bold": True}
                    }
                }]))
            if callout.content:
                children.append(build_text_block(build_text_elements_from_markdown(callout.content)))
            if children:
                await self.document_service.create_children(
                    document_id = document_id,
                    parent_id = callout_id,
                    children = children
                )
            await self.delete_block(document_id, match.block_id, match.parent_block_id)
        except AppError as exc:
            logger.error("Callout %s failed: %s", match.placeholder, str(exc))
            return False
        return True

    async def _read_attachments(self, matches: List[PlaceholderMatch]) -> Dict[str, bytes]:
        async def _read(match: PlaceholderMatch) -> bytes:
            return await asyncio.to_thread(self.read_file, match.content.original_path)

        results = await asyncio.gather(*[_read(item) for item in matches], return_exceptions = True)
        payloads: Dict[str, bytes] = {}
        for match, result in zip(matches, results):
            if isinstance(result, BaseException):
                logger.warning("Read attachment failed: %s, err = %s", match.content.original_path, str(result))
                continue
            payloads[match.placeholder] = result
        return payloads

    async def _bind_attachment(
        self,
        document_id: str,
        match: PlaceholderMatch,
        payload: bytes,
        tracker: _InsertionTracker
    ) -> bool:
        is_image = match.content.is_image
        index = tracker.current_index(match.parent_block_id, match.block_index)
        empty_block = {"block_type": BLOCK_TYPE_IMAGE, "image": {}} if is_image else {
            "block_type": BLOCK_TYPE_FILE,
            "file": {}
        }
        try:
            created = await self.document_service.create_children(
                document_id = document_id,
                parent_id = match.parent_block_id,
                children = [empty_block],
                index = index
            )
        except AppError as exc:
            logger.error("Insert block for %s failed: %s", match.content.display_name, str(exc))
            return False
        tracker.record(match.parent_block_id, match.block_index)

        target = created[0]
        if not is_image and target.get("block_type") == BLOCK_TYPE_VIEW and target.get("children"):
            target_id = target["children"][0]
        else:
            target_id = target.get("block_id", "")

        file_name = match.content.display_name or os.path.basename(match.content.original_path)
        try:
            file_token = await self.drive_service.upload_media(
                document_id = document_id,
                block_id = target_id,
                file_name = file_name,
                content = payload,
                is_image = is_image
            )
            replace_key = "replace_image" if is_image else "replace_file"
            await self.document_service.patch_block(
                document_id = document_id,
                block_id = target_id,
                body = {replace_key: {"token": file_token}}
            )
        except AppError as exc:
            logger.error("Bind %s failed: %s", file_name, str(exc))
            return False
        logger.info("Attachment bound: %s -> block %s", file_name, target_id)
        return True
