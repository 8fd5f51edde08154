import asyncio
import logging

from dataclasses import dataclass
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional

from config.config import AppConfig
from core.block_copier import BlockCopier
from core.document_replacer import DocumentReplacer
from core.exceptions import ValidationError
from core.markdown_importer import MarkdownImporter
from core.publisher import FeishuPublisher
from integrations.feishu_api import DocumentService
from integrations.feishu_api import DriveService
from integrations.feishu_api import PermissionService
from integrations.feishu_api import WikiService
from integrations.feishu_auth import AuthorizationSignal
from integrations.feishu_auth import FeishuUserTokenManager
from integrations.import_poller import ImportJobPoller
from utils.http_client import HttpClient
from utils.markdown_processor import MarkdownProcessor
from utils.rate_limiter import RateLimiter


logger = logging.getLogger(__name__)

LINK_SHARE_ENTITIES = {"tenant_readable", "tenant_editable", "anyone_readable", "anyone_editable"}


@dataclass
class Services:
    """Wired engine services sharing one HTTP client, limiter and token.

    Args:
        http_client: Shared HTTP client.
        token_manager: User token manager.
        publisher: Publish and update entry point.
    """

    http_client: HttpClient
    token_manager: FeishuUserTokenManager
    publisher: FeishuPublisher

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_http_client(config: AppConfig, transport: Any = None) -> HttpClient:
    """Create shared HTTP client from config.

    Args:
        config: Runtime configuration.
        transport: Optional httpx transport, used by tests.
    """

    return HttpClient(
        timeout = config.request_timeout,
        max_retries = config.max_retries,
        retry_backoff = config.retry_backoff,
        transport = transport
    )


def build_user_token_manager(
    config: AppConfig,
    http_client: HttpClient,
    authorization_launcher: Optional[Callable[[str], Any]] = None,
    signal: Optional[AuthorizationSignal] = None
) -> FeishuUserTokenManager:
    """Create Feishu user token manager.

    Args:
        config: Runtime configuration.
        http_client: Shared HTTP client.
        authorization_launcher: Callable receiving authorize URLs.
        signal: Shared authorization completion signal.
    """

    return FeishuUserTokenManager(
        app_id = config.feishu_app_id,
        app_secret = config.feishu_app_secret,
        base_url = config.feishu_base_url,
        http_client = http_client,
        access_token = config.feishu_user_access_token,
        refresh_token = config.feishu_user_refresh_token,
        cache_path = config.feishu_user_token_cache_path,
        redirect_uri = config.feishu_oauth_redirect_uri,
        scope = config.feishu_oauth_scope,
        authorization_launcher = authorization_launcher,
        signal = signal,
        reauth_timeout = config.reauth_timeout_seconds
    )


def build_services(
    config: AppConfig,
    interactive: bool = True,
    transport: Any = None,
    authorization_launcher: Optional[Callable[[str], Any]] = None,
    rate_limiter: Optional[RateLimiter] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> Services:
    """Wire every engine service from configuration.

    Args:
        config: Runtime configuration.
        interactive: Whether missing authorization may start a browser flow.
        transport: Optional httpx transport, used by tests.
        authorization_launcher: Callable receiving authorize URLs.
        rate_limiter: Optional limiter override.
        sleep: Awaitable sleep shared by pollers, retries and batch pacing.
    """

    validate_config(config = config)
    http_client = build_http_client(config = config, transport = transport)
    token_manager = build_user_token_manager(
        config = config,
        http_client = http_client,
        authorization_launcher = authorization_launcher
    )
    limiter = rate_limiter or RateLimiter(sleep = sleep)
    common = {
        "token_manager": token_manager,
        "http_client": http_client,
        "base_url": config.feishu_base_url,
        "rate_limiter": limiter,
        "sleep": sleep
    }
    document_service = DocumentService(**common)
    drive_service = DriveService(**common)
    importer = MarkdownImporter(
        drive_service = drive_service,
        poller = ImportJobPoller(drive_service = drive_service, sleep = sleep),
        folder_token = config.feishu_folder_token,
        doc_url_base = config.feishu_doc_url_base,
        import_timeout = config.import_timeout_seconds
    )
    publisher = FeishuPublisher(
        token_manager = token_manager,
        document_service = document_service,
        drive_service = drive_service,
        permission_service = PermissionService(**common),
        wiki_service = WikiService(**common),
        importer = importer,
        transformer = MarkdownProcessor(),
        doc_url_base = config.feishu_doc_url_base,
        target_type = config.feishu_target_type,
        wiki_space_id = config.feishu_wiki_space_id,
        wiki_parent_node = config.feishu_wiki_parent_node,
        enable_link_share = config.feishu_enable_link_share,
        link_share_entity = config.feishu_link_share_entity,
        interactive = interactive,
        sleep = sleep
    )
    publisher.replacer = DocumentReplacer(
        document_service = document_service,
        drive_service = drive_service,
        importer = importer,
        resolver = publisher.resolver,
        copier = BlockCopier(document_service = document_service, sleep = sleep),
        doc_url_base = config.feishu_doc_url_base
    )
    return Services(http_client = http_client, token_manager = token_manager, publisher = publisher)


def validate_config(config: AppConfig) -> None:
    """Validate configuration values the engine depends on.

    Args:
        config: Runtime configuration.
    """

    if config.feishu_target_type not in {"drive", "wiki"}:
        raise ValidationError(f"FEISHU_TARGET_TYPE must be drive or wiki, got {config.feishu_target_type!r}")
    if config.feishu_target_type == "wiki" and not config.feishu_wiki_space_id:
        raise ValidationError("FEISHU_WIKI_SPACE_ID is required when FEISHU_TARGET_TYPE is wiki")
    if config.feishu_link_share_entity not in LINK_SHARE_ENTITIES:
        raise ValidationError(
            f"FEISHU_LINK_SHARE_ENTITY must be one of {', '.join(sorted(LINK_SHARE_ENTITIES))}"
        )
    if is_placeholder_folder_token(token = config.feishu_folder_token):
        raise ValidationError(
            "FEISHU_FOLDER_TOKEN looks like a placeholder value. "
            "Please set a real Feishu folder token or leave it empty for the root folder."
        )
    if not config.feishu_app_id or not config.feishu_app_secret:
        logger.warning("FEISHU_APP_ID/FEISHU_APP_SECRET are empty, token refresh and re-authorization are disabled")


def is_placeholder_folder_token(token: str) -> bool:
    """Check whether one folder token looks like placeholder test value.

    Args:
        token: Folder token text.
    """

    normalized = (token or "").strip().lower()
    if not normalized:
        return False

    placeholders = {
        "test_folder_token",
        "your_folder_token",
        "example_folder_token",
        "folder_token",
        "<folder_token>"
    }
    if normalized in placeholders:
        return True
    return normalized.startswith("${") and normalized.endswith("}")
