import asyncio
import json
import logging
import re

from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from core.exceptions import ApiResponseError
from core.exceptions import AuthError
from core.exceptions import HttpRequestError
from core.exceptions import RateLimitError
from core.exceptions import StructuralError
from data.models import ImportJobStatus
from data.models import ShareCheck
from integrations.feishu_auth import FeishuUserTokenManager
from integrations.feishu_schemas import decode_block
from integrations.feishu_schemas import decode_blocks_page
from integrations.feishu_schemas import decode_created_children
from integrations.feishu_schemas import decode_envelope
from integrations.feishu_schemas import decode_import_status
from integrations.feishu_schemas import decode_import_ticket
from integrations.feishu_schemas import decode_permission_public
from integrations.feishu_schemas import decode_upload_token
from integrations.feishu_schemas import decode_wiki_move
from utils.http_client import HttpClient
from utils.http_client import MultipartFile
from utils.rate_limiter import ENDPOINT_BLOCK
from utils.rate_limiter import ENDPOINT_DOCUMENT
from utils.rate_limiter import ENDPOINT_IMPORT
from utils.rate_limiter import RateLimiter
from utils.retry_policy import RetryPolicy
from utils.retry_policy import is_rate_limited
from utils.retry_policy import run_with_retry


logger = logging.getLogger(__name__)

BLOCK_TYPE_PAGE = 1
BLOCK_TYPE_TEXT = 2
BLOCK_TYPE_BULLET = 12
BLOCK_TYPE_ORDERED = 13
BLOCK_TYPE_CODE = 14
BLOCK_TYPE_QUOTE = 15
BLOCK_TYPE_TODO = 17
BLOCK_TYPE_CALLOUT = 19
BLOCK_TYPE_DIVIDER = 22
BLOCK_TYPE_FILE = 23
BLOCK_TYPE_IMAGE = 27
BLOCK_TYPE_VIEW = 33

HEADING_FIELDS = {
    3: "heading1",
    4: "heading2",
    5: "heading3",
    6: "heading4",
    7: "heading5",
    8: "heading6",
    9: "heading7",
    10: "heading8",
    11: "heading9"
}

RATE_LIMIT_CODES = {99991400}
RATE_LIMIT_POLICY = RetryPolicy(max_attempts = 3, base_delay = 1.0, max_delay = 8.0, retryable = is_rate_limited)
PAGE_SIZE = 500

# Open API paths contain both /docx/v1/ and documents/<id>, so documents/ is tried first.
DOCUMENT_ID_PATTERNS = (
    re.compile(r"documents/([a-zA-Z0-9]+)"),
    re.compile(r"/docx/([a-zA-Z0-9]+)"),
    re.compile(r"/docs/([a-zA-Z0-9]+)")
)


def document_url(url_base: str, document_id: str) -> str:
    """Build user facing docx URL.

    Args:
        url_base: Feishu web base URL.
        document_id: Document id.
    """

    return f"{url_base.rstrip('/')}/docx/{document_id}"


def extract_document_id(url: str) -> str:
    """Extract docx document id from one document URL.

    Args:
        url: Document URL.
    """

    for pattern in DOCUMENT_ID_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1)
    raise StructuralError(f"Cannot extract document id from URL: {url}")


def raw_file_url(url_base: str, file_token: str) -> str:
    """Build user facing URL of one uploaded drive file.

    Args:
        url_base: Feishu web base URL.
        file_token: Drive file token.
    """

    return f"{url_base.rstrip('/')}/file/{file_token}"


class FeishuServiceBase:
    """Shared request helper for Feishu open APIs using the user token.

    Args:
        token_manager: Owner of the user access token.
        http_client: Shared HTTP client.
        base_url: Feishu base domain.
        rate_limiter: Shared per endpoint-class throttle.
        retry_policy: Retry policy for frequency limited requests.
        sleep: Awaitable sleep used between retries.
    """

    def __init__(
        self,
        token_manager: FeishuUserTokenManager,
        http_client: HttpClient,
        base_url: str,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy = RATE_LIMIT_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self.token_manager = token_manager
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.sleep = sleep

    async def _request_json(
        self,
        method: str,
        path: str,
        endpoint_class: str = ENDPOINT_DOCUMENT,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        data: Optional[dict] = None,
        files: Optional[Dict[str, MultipartFile]] = None,
        timeout: Optional[float] = None
    ) -> dict:
        """Send throttled, signed request and decode Feishu JSON payload.

        Frequency limit rejections are retried with exponential backoff.

        Args:
            method: HTTP method.
            path: Open API path.
            endpoint_class: Rate limiter class of this endpoint.
            params: Query parameters.
            json_body: JSON request body.
            data: Form fields.
            files: Multipart files.
            timeout: Optional per-request timeout.
        """

        async def send() -> dict:
            return await self._send(
                method = method,
                path = path,
                endpoint_class = endpoint_class,
                params = params,
                json_body = json_body,
                data = data,
                files = files,
                timeout = timeout
            )

        return await run_with_retry(
            send,
            policy = self.retry_policy,
            label = f"{method.upper()} {path}",
            sleep = self.sleep
        )

    async def _send(
        self,
        method: str,
        path: str,
        endpoint_class: str,
        params: Optional[dict],
        json_body: Optional[dict],
        data: Optional[dict],
        files: Optional[Dict[str, MultipartFile]],
        timeout: Optional[float],
        retry_on_invalid_token: bool = True
    ) -> dict:
        await self.rate_limiter.throttle(endpoint_class)
        access_token = self.token_manager.access_token
        try:
            response = await self.http_client.request(
                method = method,
                url = f"{self.base_url}{path}",
                headers = {
                    "Authorization": f"Bearer {access_token}"
                },
                params = params,
                json_body = json_body,
                data = data,
                files = files,
                allow_status = (400, 401, 403, 404, 429),
                timeout = timeout
            )
        except HttpRequestError as exc:
            if exc.status_code == 429:
                raise RateLimitError(
                    f"Feishu API rate limited for {path}",
                    status_code = 429
                ) from exc
            raise
        if response.status_code == 429:
            raise RateLimitError(f"Feishu API rate limited for {path}", status_code = 429)

        try:
            payload = decode_envelope(response = response, path = path)
        except StructuralError as exc:
            if response.status_code >= 400:
                raise HttpRequestError(
                    f"HTTP {response.status_code} for {method.upper()} {path}: {response.text[:200]}",
                    status_code = response.status_code,
                    body = response.text
                ) from exc
            raise

        code = payload.get("code")
        if code == 0:
            return payload

        if self.token_manager.is_expired_token_code(code):
            # A token replaced while this request was in flight is retried as is.
            if retry_on_invalid_token and (
                self.token_manager.access_token != access_token or await self.token_manager.refresh()
            ):
                logger.warning("Retry Feishu API after token code = %s: %s", str(code), path)
                return await self._send(
                    method = method,
                    path = path,
                    endpoint_class = endpoint_class,
                    params = params,
                    json_body = json_body,
                    data = data,
                    files = files,
                    timeout = timeout,
                    retry_on_invalid_token = False
                )
            raise AuthError(f"User access token rejected for {path}: code = {code}")

        message = f"Feishu API failed for {path}: code = {code}, msg = {payload.get('msg', 'unknown')}"
        if code in RATE_LIMIT_CODES:
            raise RateLimitError(message, code = code, status_code = response.status_code)
        raise ApiResponseError(message, code = code, status_code = response.status_code)


class DocumentService(FeishuServiceBase):
    """Read and mutate docx block trees."""

    async def get_all_blocks(self, document_id: str) -> List[dict]:
        """List all blocks of one document with pagination.

        Args:
            document_id: Document id.
        """

        path = f"/open-apis/docx/v1/documents/{document_id}/blocks"
        blocks: List[dict] = []
        page_token = ""
        while True:
            params = {"page_size": str(PAGE_SIZE)}
            if page_token:
                params["page_token"] = page_token
            payload = await self._request_json(
                method = "GET",
                path = path,
                endpoint_class = ENDPOINT_DOCUMENT,
                params = params
            )
            page = decode_blocks_page(payload = payload, path = path)
            blocks.extend(page.items)
            if not page.has_more or not page.page_token:
                break
            page_token = page.page_token
        return blocks

    async def get_block(self, document_id: str, block_id: str) -> dict:
        """Fetch one block.

        Args:
            document_id: Document id.
            block_id: Block id.
        """

        path = f"/open-apis/docx/v1/documents/{document_id}/blocks/{block_id}"
        payload = await self._request_json(method = "GET", path = path, endpoint_class = ENDPOINT_DOCUMENT)
        return decode_block(payload = payload, path = path)

    async def create_children(
        self,
        document_id: str,
        parent_id: str,
        children: List[dict],
        index: Optional[int] = None
    ) -> List[dict]:
        """Create child blocks under one parent and return created blocks.

        Args:
            document_id: Document id.
            parent_id: Parent block id.
            children: Block payloads.
            index: Insert position, appended when None.
        """

        path = f"/open-apis/docx/v1/documents/{document_id}/blocks/{parent_id}/children"
        body: dict = {"children": children}
        if index is not None:
            body["index"] = index
        payload = await self._request_json(
            method = "POST",
            path = path,
            endpoint_class = ENDPOINT_BLOCK,
            json_body = body
        )
        return decode_created_children(payload = payload, path = path)

    async def create_descendants(
        self,
        document_id: str,
        parent_id: str,
        children_id: List[str],
        descendants: List[dict],
        index: Optional[int] = None
    ) -> dict:
        """Create one nested block tree in a single call.

        Args:
            document_id: Document id.
            parent_id: Parent block id.
            children_id: Temporary ids of first level blocks.
            descendants: Flat block list keyed by temporary block_id.
            index: Insert position, appended when None.
        """

        body = {
            "children_id": children_id,
            "descendants": descendants,
            "index": -1 if index is None else index
        }
        payload = await self._request_json(
            method = "POST",
            path = f"/open-apis/docx/v1/documents/{document_id}/blocks/{parent_id}/descendant",
            endpoint_class = ENDPOINT_BLOCK,
            json_body = body
        )
        return payload.get("data") or {}

    async def patch_block(self, document_id: str, block_id: str, body: dict) -> None:
        """Patch one block.

        Args:
            document_id: Document id.
            block_id: Block id.
            body: Update request such as replace_image or update_text_elements.
        """

        await self._request_json(
            method = "PATCH",
            path = f"/open-apis/docx/v1/documents/{document_id}/blocks/{block_id}",
            endpoint_class = ENDPOINT_BLOCK,
            json_body = body
        )

    async def batch_delete_children(
        self,
        document_id: str,
        parent_id: str,
        start_index: int,
        end_index: int
    ) -> None:
        """Delete children [start_index, end_index) of one parent block.

        Args:
            document_id: Document id.
            parent_id: Parent block id.
            start_index: First index to delete.
            end_index: Exclusive end index.
        """

        await self._request_json(
            method = "DELETE",
            path = f"/open-apis/docx/v1/documents/{document_id}/blocks/{parent_id}/children/batch_delete",
            endpoint_class = ENDPOINT_BLOCK,
            json_body = {
                "start_index": start_index,
                "end_index": end_index
            }
        )

    async def clear_document(self, document_id: str) -> int:
        """Delete all children of the page block and return deleted count.

        Args:
            document_id: Document id.
        """

        blocks = await self.get_all_blocks(document_id = document_id)
        root = next(
            (block for block in blocks if block.get("block_type") == BLOCK_TYPE_PAGE),
            None
        )
        if root is None:
            raise StructuralError(f"Document {document_id} has no page block")

        children = root.get("children") or []
        if not children:
            return 0
        await self.batch_delete_children(
            document_id = document_id,
            parent_id = root["block_id"],
            start_index = 0,
            end_index = len(children)
        )
        logger.info("Cleared document: document_id = %s, children = %d", document_id, len(children))
        return len(children)

    async def check_document_access(self, document_id: str) -> bool:
        """Check whether the current user can read one document.

        Args:
            document_id: Document id.
        """

        try:
            await self._request_json(
                method = "GET",
                path = f"/open-apis/docx/v1/documents/{document_id}",
                endpoint_class = ENDPOINT_DOCUMENT
            )
        except (ApiResponseError, HttpRequestError, AuthError) as exc:
            logger.warning("Document not accessible: document_id = %s, err = %s", document_id, str(exc))
            return False
        return True


class DriveService(FeishuServiceBase):
    """Upload sources, drive import tasks and delete transient files."""

    UPLOAD_PATH = "/open-apis/drive/v1/medias/upload_all"

    async def upload_markdown(self, file_name: str, content: str, timeout: Optional[float] = None) -> str:
        """Upload markdown source for import and return file token.

        Args:
            file_name: File name, .md appended when missing.
            content: Markdown content.
            timeout: Optional per-request timeout.
        """

        final_name = file_name if file_name.endswith(".md") else f"{file_name}.md"
        raw = content.encode("utf-8")
        payload = await self._request_json(
            method = "POST",
            path = self.UPLOAD_PATH,
            endpoint_class = ENDPOINT_DOCUMENT,
            data = {
                "file_name": final_name,
                "parent_type": "ccm_import_open",
                "size": str(len(raw)),
                "extra": json.dumps({"obj_type": "docx", "file_extension": "md"}, separators = (",", ":"))
            },
            files = {
                "file": MultipartFile(
                    filename = final_name,
                    content = raw,
                    content_type = "text/markdown"
                )
            },
            timeout = timeout
        )
        return decode_upload_token(payload = payload, path = self.UPLOAD_PATH)

    async def create_import_task(
        self,
        file_token: str,
        file_name: str,
        folder_token: str = "",
        timeout: Optional[float] = None
    ) -> str:
        """Create one markdown to docx import task and return its ticket.

        Args:
            file_token: Uploaded source file token.
            file_name: Target document title.
            folder_token: Mount folder token, root folder when empty.
            timeout: Optional per-request timeout.
        """

        path = "/open-apis/drive/v1/import_tasks"
        payload = await self._request_json(
            method = "POST",
            path = path,
            endpoint_class = ENDPOINT_IMPORT,
            json_body = {
                "file_extension": "md",
                "file_token": file_token,
                "type": "docx",
                "file_name": file_name,
                "point": {
                    "mount_type": 1,
                    "mount_key": folder_token
                }
            },
            timeout = timeout
        )
        return decode_import_ticket(payload = payload, path = path)

    async def get_import_status(self, ticket: str) -> ImportJobStatus:
        """Read one import task status.

        Args:
            ticket: Import task ticket.
        """

        path = f"/open-apis/drive/v1/import_tasks/{ticket}"
        payload = await self._request_json(method = "GET", path = path, endpoint_class = ENDPOINT_IMPORT)
        return decode_import_status(payload = payload, path = path)

    async def upload_media(
        self,
        document_id: str,
        block_id: str,
        file_name: str,
        content: bytes,
        is_image: bool
    ) -> str:
        """Upload image or attachment bound to one block and return file token.

        Args:
            document_id: Document id, used as drive route token.
            block_id: Image or file block id receiving the media.
            file_name: Uploaded file name.
            content: Binary payload.
            is_image: Whether to upload as docx_image instead of docx_file.
        """

        payload = await self._request_json(
            method = "POST",
            path = self.UPLOAD_PATH,
            endpoint_class = ENDPOINT_DOCUMENT,
            data = {
                "file_name": file_name,
                "parent_type": "docx_image" if is_image else "docx_file",
                "parent_node": block_id,
                "size": str(len(content)),
                "extra": json.dumps({"drive_route_token": document_id}, separators = (",", ":"))
            },
            files = {
                "file": MultipartFile(
                    filename = file_name,
                    content = content,
                    content_type = "application/octet-stream"
                )
            }
        )
        return decode_upload_token(payload = payload, path = self.UPLOAD_PATH)

    async def delete_source_file(self, file_token: str) -> None:
        """Delete one uploaded source file, tolerating files already gone.

        Args:
            file_token: Drive file token.
        """

        try:
            await self._request_json(
                method = "GET",
                path = f"/open-apis/drive/v1/files/{file_token}/meta",
                endpoint_class = ENDPOINT_DOCUMENT
            )
        except (ApiResponseError, HttpRequestError) as exc:
            if _is_not_found(exc):
                logger.info("Source file already gone: %s", file_token)
                return
            logger.debug("Source file meta check failed, deleting anyway: %s", str(exc))

        try:
            await self._request_json(
                method = "POST",
                path = f"/open-apis/drive/v1/files/{file_token}/trash",
                endpoint_class = ENDPOINT_DOCUMENT,
                json_body = {}
            )
            logger.info("Source file moved to trash: %s", file_token)
            return
        except (ApiResponseError, HttpRequestError) as exc:
            if _is_not_found(exc):
                logger.info("Source file already gone: %s", file_token)
                return
            logger.warning("Trash source file failed, falling back to delete: %s", str(exc))

        try:
            await self._request_json(
                method = "DELETE",
                path = f"/open-apis/drive/v1/files/{file_token}",
                endpoint_class = ENDPOINT_DOCUMENT,
                params = {"type": "file"}
            )
            logger.info("Source file deleted: %s", file_token)
        except (ApiResponseError, HttpRequestError) as exc:
            if _is_not_found(exc):
                logger.info("Source file already gone: %s", file_token)
                return
            logger.warning("Failed to delete source file %s: %s", file_token, str(exc))

    async def delete_document(self, document_id: str) -> None:
        """Delete one docx document.

        Args:
            document_id: Document id.
        """

        await self._request_json(
            method = "DELETE",
            path = f"/open-apis/drive/v1/files/{document_id}",
            endpoint_class = ENDPOINT_DOCUMENT,
            params = {"type": "docx"}
        )
        logger.info("Deleted document: %s", document_id)


class PermissionService(FeishuServiceBase):
    """Set and read public link sharing of documents."""

    async def set_link_share(self, document_token: str, link_share_entity: str = "anyone_readable") -> None:
        """Open link sharing of one docx document.

        Args:
            document_token: Document id.
            link_share_entity: tenant_readable, tenant_editable, anyone_readable or anyone_editable.
        """

        try:
            current = await self.get_public_permissions(document_token = document_token)
            if current.get("link_share_entity") == link_share_entity:
                logger.info("Link share already set: %s = %s", document_token, link_share_entity)
                return
        except (ApiResponseError, HttpRequestError) as exc:
            logger.debug("Read permission failed, updating anyway: %s", str(exc))

        await self._request_json(
            method = "PATCH",
            path = f"/open-apis/drive/v2/permissions/{document_token}/public",
            endpoint_class = ENDPOINT_DOCUMENT,
            params = {"type": "docx"},
            json_body = {
                "link_share_entity": link_share_entity,
                "external_access_entity": "open",
                "share_entity": "anyone",
                "manage_collaborator_entity": "collaborator_can_view"
            }
        )
        logger.info("Link share set: %s = %s", document_token, link_share_entity)

    async def get_public_permissions(self, document_token: str) -> dict:
        """Read permission_public of one docx document.

        Args:
            document_token: Document id.
        """

        path = f"/open-apis/drive/v2/permissions/{document_token}/public"
        payload = await self._request_json(
            method = "GET",
            path = path,
            endpoint_class = ENDPOINT_DOCUMENT,
            params = {"type": "docx"}
        )
        return decode_permission_public(payload = payload, path = path)

    async def verify_link_sharing(self, document_token: str) -> ShareCheck:
        """Read back whether link sharing is effective.

        Args:
            document_token: Document id.
        """

        permission = await self.get_public_permissions(document_token = document_token)
        entity = str(permission.get("link_share_entity") or "")
        external = permission.get("external_access_entity", permission.get("external_access"))
        return ShareCheck(
            link_shared = entity.startswith("anyone") or entity.startswith("tenant"),
            link_share_entity = entity,
            external_access = external in {True, "open"},
            raw = permission
        )


class WikiService(FeishuServiceBase):
    """Move imported documents into a wiki space."""

    async def move_doc_to_wiki(
        self,
        space_id: str,
        document_id: str,
        parent_node_token: str = ""
    ) -> str:
        """Move one docx document into wiki and return wiki token when available.

        Args:
            space_id: Wiki space id.
            document_id: Source docx document id.
            parent_node_token: Parent node token, space root when empty.
        """

        path = f"/open-apis/wiki/v2/spaces/{space_id}/nodes/move_docs_to_wiki"
        body = {
            "obj_type": "docx",
            "obj_token": document_id
        }
        if parent_node_token:
            body["parent_wiki_token"] = parent_node_token
        payload = await self._request_json(
            method = "POST",
            path = path,
            endpoint_class = ENDPOINT_DOCUMENT,
            json_body = body
        )
        return decode_wiki_move(payload = payload, path = path)


def _is_not_found(exc: Exception) -> bool:
    return getattr(exc, "status_code", 0) == 404
