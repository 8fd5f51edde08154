import asyncio
import logging
import os

from pathlib import Path
from typing import Awaitable
from typing import Callable
from typing import List
from typing import Optional

from core.document_replacer import DocumentReplacer
from core.exceptions import AppError
from core.exceptions import ImportFailedError
from core.exceptions import ValidationError
from core.markdown_importer import MarkdownImporter
from core.markdown_importer import strip_markdown_suffix
from core.placeholder_resolver import PlaceholderResolver
from data.models import PendingContent
from data.models import ProgressSink
from data.models import PublishResult
from data.models import TransformedMarkdown
from data.models import UpdateResult
from integrations.feishu_api import DocumentService
from integrations.feishu_api import DriveService
from integrations.feishu_api import PermissionService
from integrations.feishu_api import WikiService
from integrations.feishu_api import extract_document_id
from integrations.feishu_api import raw_file_url
from integrations.feishu_auth import FeishuUserTokenManager
from utils.markdown_processor import MarkdownProcessor


logger = logging.getLogger(__name__)

MAX_SUB_DOCUMENT_DEPTH = 3


class LoggingProgressSink:
    """Progress sink writing each stage to the log."""

    def __init__(self, name: str = "publish") -> None:
        self.name = name

    def __call__(self, message: str) -> None:
        logger.info("[%s] %s", self.name, message)


class FeishuPublisher:
    """Publish markdown as a new Feishu document or overwrite an existing one.

    Both entry points return result objects and never raise.

    Args:
        token_manager: User token manager.
        document_service: Block API service.
        drive_service: Drive API service.
        permission_service: Permission API service.
        wiki_service: Wiki API service.
        importer: Markdown upload and import helper.
        transformer: Markdown transformer used for files and sub-documents.
        doc_url_base: Base URL of user facing document links.
        target_type: drive or wiki.
        wiki_space_id: Wiki space receiving published documents.
        wiki_parent_node: Optional parent wiki node.
        enable_link_share: Whether to open link sharing.
        link_share_entity: Link share policy value.
        interactive: Whether missing authorization may trigger a browser flow.
        sleep: Awaitable sleep used by placeholder cleanup retries.
    """

    def __init__(
        self,
        token_manager: FeishuUserTokenManager,
        document_service: DocumentService,
        drive_service: DriveService,
        permission_service: PermissionService,
        wiki_service: WikiService,
        importer: MarkdownImporter,
        transformer: Optional[MarkdownProcessor] = None,
        doc_url_base: str = "https://feishu.cn",
        target_type: str = "drive",
        wiki_space_id: str = "",
        wiki_parent_node: str = "",
        enable_link_share: bool = True,
        link_share_entity: str = "anyone_readable",
        interactive: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self.token_manager = token_manager
        self.document_service = document_service
        self.drive_service = drive_service
        self.permission_service = permission_service
        self.wiki_service = wiki_service
        self.importer = importer
        self.transformer = transformer or MarkdownProcessor()
        self.doc_url_base = doc_url_base.rstrip("/")
        self.target_type = target_type
        self.wiki_space_id = wiki_space_id
        self.wiki_parent_node = wiki_parent_node
        self.enable_link_share = enable_link_share
        self.link_share_entity = link_share_entity
        self.interactive = interactive

        self.resolver = PlaceholderResolver(
            document_service = document_service,
            drive_service = drive_service,
            sub_document_resolver = self.resolve_sub_document,
            sleep = sleep
        )
        self.replacer: Optional[DocumentReplacer] = None
        self._sub_document_stack: List[str] = []

    async def publish(
        self,
        title: str,
        content: str,
        pending_contents: List[PendingContent],
        progress: Optional[ProgressSink] = None
    ) -> PublishResult:
        """Create a new document from placeholder markdown.

        Args:
            title: Document title, a trailing .md is dropped.
            content: Markdown with placeholders.
            pending_contents: Deferred contents referenced by content.
            progress: Optional progress sink.
        """

        notify = progress or LoggingProgressSink()
        final_title = strip_markdown_suffix(title)
        try:
            notify("Checking authorization")
            if not await self.token_manager.ensure_valid(interactive = self.interactive):
                return PublishResult(
                    success = False,
                    title = final_title,
                    error = "Feishu authorization is missing or expired, please authorize and retry"
                )

            try:
                uploaded = await self.importer.import_markdown(
                    title = final_title,
                    content = content,
                    progress = notify
                )
            except ImportFailedError as exc:
                if not exc.file_token:
                    raise
                logger.warning("Conversion failed, keeping raw markdown file: %s", str(exc))
                return PublishResult(
                    success = True,
                    url = raw_file_url(self.doc_url_base, exc.file_token),
                    title = final_title,
                    error = f"Document conversion failed, uploaded as raw file: {exc}",
                    source_file_token = exc.file_token
                )

            url = uploaded.url
            if self.target_type == "wiki" and self.wiki_space_id:
                notify("Moving to wiki")
                url = await self._move_to_wiki(uploaded.document_id, url)

            warning = ""
            if pending_contents:
                notify("Resolving placeholders")
                report = await self.resolver.resolve(
                    document_id = uploaded.document_id,
                    pending_contents = pending_contents,
                    progress = notify
                )
                if report.failed or report.remaining:
                    warning = (
                        f"{len(report.failed)} contents could not be bound, "
                        f"{len(report.remaining)} placeholders remain"
                    )

            notify("Setting permissions")
            await self._finish_document(uploaded.document_id, uploaded.file_token)
            notify("Publish finished")
            return PublishResult(
                success = True,
                url = url,
                title = final_title,
                error = warning,
                document_id = uploaded.document_id,
                source_file_token = uploaded.file_token
            )
        except Exception as exc:
            logger.exception("Publish of %s failed", final_title)
            return PublishResult(success = False, title = final_title, error = str(exc))

    async def update_existing(
        self,
        existing_url: str,
        title: str,
        content: str,
        pending_contents: List[PendingContent],
        progress: Optional[ProgressSink] = None
    ) -> UpdateResult:
        """Overwrite an existing document with placeholder markdown.

        Args:
            existing_url: URL of the document to overwrite.
            title: Title of the new content.
            content: Markdown with placeholders.
            pending_contents: Deferred contents referenced by content.
            progress: Optional progress sink.
        """

        notify = progress or LoggingProgressSink(name = "update")
        try:
            if self.replacer is None:
                raise ValidationError("Document replacer is not configured")
            notify("Checking authorization")
            if not await self.token_manager.ensure_valid(interactive = self.interactive):
                return UpdateResult(
                    success = False,
                    url = existing_url,
                    error = "Feishu authorization is missing or expired, please authorize and retry"
                )
            return await self.replacer.replace(
                existing_url = existing_url,
                title = strip_markdown_suffix(title),
                content = content,
                pending_contents = pending_contents,
                progress = notify
            )
        except Exception as exc:
            logger.exception("Update of %s failed", existing_url)
            return UpdateResult(success = False, url = existing_url, error = str(exc))

    def prepare_file(self, file_path: str, title: str = "") -> TransformedMarkdown:
        """Read and transform one local markdown file.

        Args:
            file_path: Markdown file path.
            title: Optional title override.
        """

        path = Path(file_path)
        if not path.is_file():
            raise ValidationError(f"Markdown file not found: {file_path}")
        transformed = self.transformer.transform(
            md_text = path.read_text(encoding = "utf-8"),
            base_path = str(path.parent),
            default_title = path.stem
        )
        if title:
            transformed.title = title
        return transformed

    async def resolve_sub_document(self, content: PendingContent) -> str:
        """Publish one referenced markdown file and return its URL.

        Args:
            content: Sub-document pending content.
        """

        path = os.path.abspath(content.original_path)
        if path in self._sub_document_stack:
            raise ValidationError(f"Circular sub-document reference: {path}")
        if len(self._sub_document_stack) >= MAX_SUB_DOCUMENT_DEPTH:
            raise ValidationError(f"Sub-document nesting deeper than {MAX_SUB_DOCUMENT_DEPTH}: {path}")

        transformed = await asyncio.to_thread(self.prepare_file, path)
        if transformed.feishu_url:
            existing_id = ""
            try:
                existing_id = extract_document_id(transformed.feishu_url)
            except AppError as exc:
                logger.debug("Ignore unusable feishu_url of %s: %s", path, str(exc))
            if existing_id and await self.document_service.check_document_access(document_id = existing_id):
                logger.info("Reusing existing document for %s: %s", path, transformed.feishu_url)
                return transformed.feishu_url

        try:
            uploaded = await self.importer.import_markdown(
                title = strip_markdown_suffix(transformed.title or content.display_name),
                content = transformed.content
            )
        except ImportFailedError as exc:
            if not exc.file_token:
                raise
            logger.warning("Sub-document conversion failed, linking raw file: %s", str(exc))
            return raw_file_url(self.doc_url_base, exc.file_token)
        self._sub_document_stack.append(path)
        try:
            await self.resolver.resolve(
                document_id = uploaded.document_id,
                pending_contents = transformed.pending_contents
            )
        finally:
            self._sub_document_stack.pop()

        await self._finish_document(uploaded.document_id, uploaded.file_token)
        return uploaded.url

    async def _move_to_wiki(self, document_id: str, fallback_url: str) -> str:
        try:
            wiki_token = await self.wiki_service.move_doc_to_wiki(
                space_id = self.wiki_space_id,
                document_id = document_id,
                parent_node_token = self.wiki_parent_node
            )
        except AppError as exc:
            logger.warning("Move to wiki failed, keeping docx URL: %s", str(exc))
            return fallback_url
        if not wiki_token:
            return fallback_url
        return f"{self.doc_url_base}/wiki/{wiki_token}"

    async def _finish_document(self, document_id: str, file_token: str) -> None:
        tasks = [self.drive_service.delete_source_file(file_token = file_token)]
        if self.enable_link_share:
            tasks.append(self.permission_service.set_link_share(
                document_token = document_id,
                link_share_entity = self.link_share_entity
            ))
        results = await asyncio.gather(*tasks, return_exceptions = True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Post-publish step failed for %s: %s", document_id, str(result))
