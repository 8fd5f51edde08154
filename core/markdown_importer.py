import logging

from typing import Optional

from core.exceptions import AppError
from core.exceptions import ImportFailedError
from data.models import ProgressSink
from data.models import UploadedImport
from integrations.feishu_api import DriveService
from integrations.feishu_api import document_url
from integrations.import_poller import ImportJobPoller


logger = logging.getLogger(__name__)


def strip_markdown_suffix(title: str) -> str:
    """Drop a trailing .md from one document title.

    Args:
        title: Raw title.
    """

    value = title.strip()
    if value.lower().endswith(".md"):
        value = value[:-3]
    return value or "Untitled"


class MarkdownImporter:
    """Upload markdown and convert it into a docx document.

    Args:
        drive_service: Drive API service.
        poller: Import job poller.
        folder_token: Mount folder of created documents.
        doc_url_base: Base URL of user facing document links.
        import_timeout: Bounded wait for one import job in seconds.
    """

    def __init__(
        self,
        drive_service: DriveService,
        poller: ImportJobPoller,
        folder_token: str = "",
        doc_url_base: str = "https://feishu.cn",
        import_timeout: float = 15.0
    ) -> None:
        self.drive_service = drive_service
        self.poller = poller
        self.folder_token = folder_token
        self.doc_url_base = doc_url_base
        self.import_timeout = import_timeout

    async def import_markdown(
        self,
        title: str,
        content: str,
        progress: Optional[ProgressSink] = None
    ) -> UploadedImport:
        """Upload one markdown document and wait for its conversion.

        Args:
            title: Document title without extension.
            content: Markdown content.
            progress: Optional progress sink.
        """

        notify = progress or (lambda message: None)
        notify(f"Uploading {title}")
        file_token = await self.drive_service.upload_markdown(
            file_name = f"{title}.md",
            content = content
        )
        logger.info("Markdown uploaded: title = %s, file_token = %s", title, file_token)

        notify(f"Importing {title}")
        try:
            ticket = await self.drive_service.create_import_task(
                file_token = file_token,
                file_name = title,
                folder_token = self.folder_token
            )
            result = await self.poller.wait_for_completion(ticket = ticket, timeout_seconds = self.import_timeout)
        except AppError as exc:
            raise ImportFailedError(
                f"Import of {title} failed: {exc}",
                file_token = file_token
            ) from exc
        if not result.success:
            raise ImportFailedError(
                f"Import of {title} failed: {result.error}",
                file_token = file_token
            )

        return UploadedImport(
            document_id = result.document_id,
            file_token = file_token,
            url = document_url(self.doc_url_base, result.document_id)
        )
