import logging

from typing import List
from typing import Optional

from core.block_copier import BlockCopier
from core.exceptions import AppError
from core.exceptions import ImportFailedError
from core.exceptions import StructuralError
from core.markdown_importer import MarkdownImporter
from core.placeholder_resolver import PlaceholderResolver
from data.models import PendingContent
from data.models import ProgressSink
from data.models import SyncOperation
from data.models import UpdateResult
from integrations.feishu_api import BLOCK_TYPE_PAGE
from integrations.feishu_api import DocumentService
from integrations.feishu_api import DriveService
from integrations.feishu_api import document_url
from integrations.feishu_api import extract_document_id


logger = logging.getLogger(__name__)

SCRATCH_SUFFIX = "_temp"


def root_children(blocks: List[dict], document_id: str) -> List[str]:
    """Return first level block ids of one document snapshot.

    Args:
        blocks: Flat block list.
        document_id: Document id, equal to the page block id.
    """

    page = next(
        (
            block for block in blocks
            if block.get("block_id") == document_id or block.get("block_type") == BLOCK_TYPE_PAGE
        ),
        None
    )
    if page is None:
        raise StructuralError(f"Document {document_id} has no page block")
    return list(page.get("children") or [])


class DocumentReplacer:
    """Overwrite an existing document with new content, rolling back on failure.

    The new content is first imported into a scratch document, then copied
    block by block into the target after the target was backed up and
    cleared.

    Args:
        document_service: Block API service.
        drive_service: Drive API service.
        importer: Markdown upload and import helper.
        resolver: Placeholder resolver bound to the target.
        copier: Block tree copier.
        doc_url_base: Base URL of user facing document links.
    """

    def __init__(
        self,
        document_service: DocumentService,
        drive_service: DriveService,
        importer: MarkdownImporter,
        resolver: PlaceholderResolver,
        copier: BlockCopier,
        doc_url_base: str = "https://feishu.cn"
    ) -> None:
        self.document_service = document_service
        self.drive_service = drive_service
        self.importer = importer
        self.resolver = resolver
        self.copier = copier
        self.doc_url_base = doc_url_base

    async def replace(
        self,
        existing_url: str,
        title: str,
        content: str,
        pending_contents: List[PendingContent],
        progress: Optional[ProgressSink] = None
    ) -> UpdateResult:
        """Replace the whole content of one existing document.

        Args:
            existing_url: URL of the document to overwrite.
            title: Title used for the scratch document.
            content: Markdown content with placeholders.
            pending_contents: Deferred contents referenced by content.
            progress: Optional progress sink.
        """

        notify = progress or (lambda message: None)
        document_id = extract_document_id(existing_url)
        url = document_url(self.doc_url_base, document_id)

        notify("Checking document access")
        if not await self.document_service.check_document_access(document_id = document_id):
            return UpdateResult(success = False, url = url, error = f"Document {document_id} is not accessible")

        operation = SyncOperation(target_document_id = document_id)
        notify("Backing up document")
        try:
            operation.original_blocks_backup = await self.document_service.get_all_blocks(document_id = document_id)
            logger.info("Backup taken: document_id = %s, blocks = %d", document_id, len(operation.original_blocks_backup))
        except AppError as exc:
            logger.warning("Backup failed, continuing without rollback: %s", str(exc))

        try:
            await self._apply(operation, title, content, pending_contents, notify)
        except Exception as exc:
            logger.error("Update of %s failed: %s", document_id, str(exc))
            await self._delete_scratch_source(operation)
            await self._delete_scratch(operation)
            notify("Rolling back")
            await self.rollback(operation)
            return UpdateResult(success = False, url = url, error = str(exc))

        await self._delete_scratch(operation)
        notify("Update finished")
        return UpdateResult(success = True, url = url)

    async def _apply(
        self,
        operation: SyncOperation,
        title: str,
        content: str,
        pending_contents: List[PendingContent],
        notify: ProgressSink
    ) -> None:
        notify("Creating scratch document")
        try:
            scratch = await self.importer.import_markdown(
                title = f"{title}{SCRATCH_SUFFIX}",
                content = content,
                progress = notify
            )
        except ImportFailedError as exc:
            operation.scratch_file_token = exc.file_token
            raise
        operation.scratch_document_id = scratch.document_id
        operation.scratch_file_token = scratch.file_token
        await self._delete_scratch_source(operation)

        notify("Clearing document")
        await self.document_service.clear_document(document_id = operation.target_document_id)

        notify("Copying content")
        scratch_blocks = await self.document_service.get_all_blocks(document_id = scratch.document_id)
        await self.copier.copy_blocks(
            target_document_id = operation.target_document_id,
            blocks = scratch_blocks,
            root_child_ids = root_children(scratch_blocks, scratch.document_id)
        )

        notify("Resolving placeholders")
        await self.resolver.resolve(
            document_id = operation.target_document_id,
            pending_contents = pending_contents,
            progress = notify
        )

    async def rollback(self, operation: SyncOperation) -> bool:
        """Restore the target document from its backup.

        Args:
            operation: Update operation state.
        """

        backup = operation.original_blocks_backup
        if backup is None:
            logger.warning("No backup of %s, rollback skipped", operation.target_document_id)
            return False
        try:
            await self.document_service.clear_document(document_id = operation.target_document_id)
            restored = await self.copier.copy_blocks(
                target_document_id = operation.target_document_id,
                blocks = backup,
                root_child_ids = root_children(backup, operation.target_document_id)
            )
        except AppError as exc:
            logger.error("Rollback of %s failed: %s", operation.target_document_id, str(exc))
            return False
        logger.info("Rollback restored %d blocks into %s", restored, operation.target_document_id)
        return True

    async def _delete_scratch(self, operation: SyncOperation) -> None:
        if not operation.scratch_document_id:
            return
        try:
            await self.drive_service.delete_document(document_id = operation.scratch_document_id)
        except AppError as exc:
            logger.warning("Failed to delete scratch document %s: %s", operation.scratch_document_id, str(exc))
        operation.scratch_document_id = ""

    async def _delete_scratch_source(self, operation: SyncOperation) -> None:
        if not operation.scratch_file_token:
            return
        try:
            await self.drive_service.delete_source_file(file_token = operation.scratch_file_token)
        except AppError as exc:
            logger.warning("Failed to delete scratch source %s: %s", operation.scratch_file_token, str(exc))
        operation.scratch_file_token = ""
