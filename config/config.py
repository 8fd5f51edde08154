import os
import pathlib

from dataclasses import dataclass


DEFAULT_OAUTH_SCOPE = "contact:user.base:readonly docx:document drive:drive wiki:wiki offline_access"


@dataclass
class AppConfig:
    """Application runtime configuration.

    Args:
        feishu_base_url: Feishu open platform base url.
        feishu_app_id: App id of the Feishu custom app.
        feishu_app_secret: App secret of the Feishu custom app.
        feishu_user_access_token: Bootstrap user access token.
        feishu_user_refresh_token: Bootstrap user refresh token.
        feishu_user_token_cache_path: Cache file path for persisted user tokens.
        feishu_oauth_redirect_uri: OAuth redirect URI registered for the app.
        feishu_oauth_scope: Space-delimited OAuth scopes.
        feishu_folder_token: Drive folder receiving imported documents.
        feishu_target_type: Publish target, drive or wiki.
        feishu_wiki_space_id: Wiki space id used when target type is wiki.
        feishu_wiki_parent_node: Optional parent wiki node token.
        feishu_enable_link_share: Whether to open link sharing on new documents.
        feishu_link_share_entity: Link share policy value.
        feishu_doc_url_base: Base URL used to build user facing document links.
        request_timeout: HTTP timeout in seconds.
        max_retries: Maximum attempts for temporary HTTP failures.
        retry_backoff: Retry backoff multiplier in seconds.
        import_timeout_seconds: Bounded wait for one import job.
        reauth_timeout_seconds: Bounded wait for interactive re-authorization.
    """

    feishu_base_url: str
    feishu_app_id: str
    feishu_app_secret: str
    feishu_user_access_token: str
    feishu_user_refresh_token: str
    feishu_user_token_cache_path: str
    feishu_oauth_redirect_uri: str
    feishu_oauth_scope: str
    feishu_folder_token: str
    feishu_target_type: str
    feishu_wiki_space_id: str
    feishu_wiki_parent_node: str
    feishu_enable_link_share: bool
    feishu_link_share_entity: str
    feishu_doc_url_base: str
    request_timeout: float
    max_retries: int
    retry_backoff: float
    import_timeout_seconds: float = 15.0
    reauth_timeout_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build configuration from environment variables.

        Args:
            cls: Class reference used by dataclass factory.
        """

        load_dotenv_if_exists()

        return cls(
            feishu_base_url = os.getenv("FEISHU_BASE_URL", "https://open.feishu.cn").rstrip("/"),
            feishu_app_id = os.getenv("FEISHU_APP_ID", ""),
            feishu_app_secret = os.getenv("FEISHU_APP_SECRET", ""),
            feishu_user_access_token = os.getenv("FEISHU_USER_ACCESS_TOKEN", ""),
            feishu_user_refresh_token = os.getenv("FEISHU_USER_REFRESH_TOKEN", ""),
            feishu_user_token_cache_path = os.getenv(
                "FEISHU_USER_TOKEN_CACHE_PATH",
                "cache/user_token.json"
            ),
            feishu_oauth_redirect_uri = os.getenv(
                "FEISHU_OAUTH_REDIRECT_URI",
                "http://127.0.0.1:8000/api/oauth/callback"
            ),
            feishu_oauth_scope = os.getenv("FEISHU_OAUTH_SCOPE", DEFAULT_OAUTH_SCOPE),
            feishu_folder_token = os.getenv("FEISHU_FOLDER_TOKEN", ""),
            feishu_target_type = os.getenv("FEISHU_TARGET_TYPE", "drive").strip().lower(),
            feishu_wiki_space_id = os.getenv("FEISHU_WIKI_SPACE_ID", ""),
            feishu_wiki_parent_node = os.getenv("FEISHU_WIKI_PARENT_NODE", ""),
            feishu_enable_link_share = _env_flag("FEISHU_ENABLE_LINK_SHARE", True),
            feishu_link_share_entity = os.getenv("FEISHU_LINK_SHARE_ENTITY", "anyone_readable"),
            feishu_doc_url_base = os.getenv("FEISHU_DOC_URL_BASE", "https://feishu.cn").rstrip("/"),
            request_timeout = float(os.getenv("REQUEST_TIMEOUT", "30")),
            max_retries = int(os.getenv("MAX_RETRIES", "3")),
            retry_backoff = float(os.getenv("RETRY_BACKOFF", "1.0")),
            import_timeout_seconds = float(os.getenv("IMPORT_TIMEOUT_SECONDS", "15")),
            reauth_timeout_seconds = float(os.getenv("REAUTH_TIMEOUT_SECONDS", "300"))
        )


def get_project_root() -> pathlib.Path:
    """Return repository root directory.

    Args:
        None
    """

    return pathlib.Path(__file__).resolve().parent.parent


def _env_flag(key: str, default: bool) -> bool:
    """Read one boolean env flag.

    Args:
        key: Env variable key.
        default: Value used when the key is unset.
    """

    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_dotenv_if_exists(dotenv_path: str = ".env") -> None:
    """Load .env key-values into process env if file exists.

    Args:
        dotenv_path: .env file path, relative to the working directory first,
            then to the project root.
    """

    candidates = [
        pathlib.Path(dotenv_path),
        get_project_root() / dotenv_path
    ]
    env_path = next((item for item in candidates if item.exists()), None)
    if env_path is None:
        return

    with open(env_path, "r", encoding = "utf-8") as fp:
        for raw_line in fp:
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            if key and key not in os.environ:
                os.environ[key] = value
