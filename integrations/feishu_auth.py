import json
import time
import uuid
import asyncio
import logging
import webbrowser
import urllib.parse

from pathlib import Path
from typing import Any
from typing import Callable
from typing import Optional
from typing import Set

from core.exceptions import ApiResponseError
from core.exceptions import HttpRequestError
from core.exceptions import StructuralError
from config.config import DEFAULT_OAUTH_SCOPE
from integrations.feishu_schemas import decode_envelope
from utils.http_client import HttpClient


logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.feishu.cn/open-apis/authen/v1/authorize"
USER_INFO_PATH = "/open-apis/authen/v1/user_info"
OAUTH_TOKEN_PATH = "/open-apis/authen/v2/oauth/token"

# Codes meaning the access token is expired or invalid and a refresh may help.
EXPIRED_TOKEN_CODES = {
    99991661,
    99991662,
    99991663,
    99991664,
    99991665,
    99991666,
    20005,
    20026
}


class AuthorizationSignal:
    """Out-of-band "authorization completed" signal.

    Waiters register one future each; notify resolves every pending one.
    """

    def __init__(self) -> None:
        self._listeners: Set[asyncio.Future] = set()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def register(self) -> asyncio.Future:
        """Create and register one listener future.

        Args:
            self: Signal instance.
        """

        future = asyncio.get_running_loop().create_future()
        self._listeners.add(future)
        return future

    def unregister(self, future: asyncio.Future) -> None:
        """Remove one listener future.

        Args:
            future: Future returned by register.
        """

        self._listeners.discard(future)

    def notify(self) -> int:
        """Resolve all waiting listeners and return how many were woken.

        Args:
            self: Signal instance.
        """

        woken = 0
        for future in list(self._listeners):
            if not future.done():
                future.set_result(True)
                woken += 1
        return woken


def open_authorize_url_in_browser(authorize_url: str) -> None:
    """Default authorization launcher.

    Args:
        authorize_url: OAuth authorize URL.
    """

    logger.info("OAuth authorize URL: %s", authorize_url)
    try:
        webbrowser.open(authorize_url, new = 2)
    except webbrowser.Error as exc:
        logger.warning("Failed to open browser, open the URL manually: %s", str(exc))


class FeishuUserTokenManager:
    """Own the user access/refresh token pair and keep it usable.

    Args:
        app_id: Feishu app id.
        app_secret: Feishu app secret.
        base_url: Feishu base domain.
        http_client: Shared HTTP client.
        access_token: Optional bootstrap access token.
        refresh_token: Optional bootstrap refresh token.
        cache_path: Local cache path for refreshed tokens.
        redirect_uri: OAuth redirect URI used for re-authorization.
        scope: OAuth scopes used for re-authorization.
        authorization_launcher: Callable receiving the authorize URL.
        signal: Signal fired when authorization completed.
        reauth_timeout: Seconds to wait for re-authorization.
        settle_delay: Seconds to wait after the signal before resuming.
    """

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        base_url: str,
        http_client: HttpClient,
        access_token: str = "",
        refresh_token: str = "",
        cache_path: str = "cache/user_token.json",
        redirect_uri: str = "",
        scope: str = DEFAULT_OAUTH_SCOPE,
        authorization_launcher: Optional[Callable[[str], Any]] = None,
        signal: Optional[AuthorizationSignal] = None,
        reauth_timeout: float = 300.0,
        settle_delay: float = 1.0
    ) -> None:
        self.app_id = app_id
        self.app_secret = app_secret
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client

        self.access_token = access_token.strip()
        self.refresh_token = refresh_token.strip()
        self.cache_path = cache_path.strip()
        self.redirect_uri = redirect_uri
        self.scope = scope
        self.authorization_launcher = authorization_launcher or open_authorize_url_in_browser
        self.signal = signal or AuthorizationSignal()
        self.reauth_timeout = reauth_timeout
        self.settle_delay = settle_delay

        self._loaded_cache = False
        self._expires_at = 0.0
        self._pending_refresh: Optional[asyncio.Task] = None
        self._pending_reauth: Optional[asyncio.Task] = None
        self._pending_state = ""

    async def ensure_valid(self, interactive: bool = False) -> bool:
        """Make sure a usable access token is held.

        Args:
            interactive: Whether re-authorization may be started and awaited.
        """

        self._load_cache_if_needed()
        if not self.access_token:
            if self.refresh_token and await self.refresh():
                return True
            if not interactive:
                logger.warning("No Feishu user access token available")
                return False
            return await self._reauthorize(reason = "missing access token")

        try:
            code = await self._check_token()
        except (HttpRequestError, StructuralError) as exc:
            logger.warning("Token check failed: %s", str(exc))
            if not interactive:
                return False
            return await self._reauthorize(reason = "token check failed")

        if code == 0:
            return True

        if self.is_expired_token_code(code):
            logger.info("Access token expired (code = %s), refreshing", str(code))
            if await self.refresh():
                return True
            if not interactive:
                return False
            return await self._reauthorize(reason = "token refresh failed")

        logger.warning("Access token rejected: code = %s", str(code))
        if not interactive:
            return False
        return await self._reauthorize(reason = f"token invalid (code = {code})")

    async def refresh(self) -> bool:
        """Refresh the access token, sharing one in-flight refresh among callers.

        Args:
            self: Token manager instance.
        """

        if self._pending_refresh is None:
            task = asyncio.ensure_future(self._do_refresh())
            task.add_done_callback(self._clear_pending_refresh)
            self._pending_refresh = task
        return await asyncio.shield(self._pending_refresh)

    def is_expired_token_code(self, code: Any) -> bool:
        """Check whether Feishu response code indicates expired or invalid token.

        Args:
            code: API payload code value.
        """

        try:
            return int(code) in EXPIRED_TOKEN_CODES
        except (TypeError, ValueError):
            return False

    def has_any_token(self) -> bool:
        """Check whether access token or refresh token is available.

        Args:
            self: Token manager instance.
        """

        self._load_cache_if_needed()
        return bool(self.access_token or self.refresh_token)

    def build_authorize_url(
        self,
        redirect_uri: str = "",
        scope: str = "",
        state: str = ""
    ) -> str:
        """Build browser authorization URL for OAuth code flow.

        Args:
            redirect_uri: OAuth callback URI, defaults to the configured one.
            scope: Space-delimited scopes, defaults to the configured ones.
            state: Anti-CSRF state value, random when empty.
        """

        self._pending_state = state or uuid.uuid4().hex
        query = urllib.parse.urlencode(
            {
                "client_id": self.app_id,
                "response_type": "code",
                "redirect_uri": redirect_uri or self.redirect_uri,
                "scope": scope or self.scope,
                "state": self._pending_state
            },
            quote_via = urllib.parse.quote
        )
        return f"{AUTHORIZE_URL}?{query}"

    async def exchange_code_for_token(self, code: str, redirect_uri: str = "") -> str:
        """Exchange one-time OAuth code for user tokens.

        Args:
            code: Authorization code from redirect callback.
            redirect_uri: OAuth redirect URI used during authorization.
        """

        request_body = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.app_id,
            "client_secret": self.app_secret
        }
        if redirect_uri or self.redirect_uri:
            request_body["redirect_uri"] = redirect_uri or self.redirect_uri

        payload = await self._request_oauth_token(body = request_body)
        return self._save_tokens_from_payload(payload = payload)

    async def handle_authorization_code(self, code: str, state: str = "", error: str = "") -> bool:
        """Finish one OAuth callback and fire the authorization signal.

        Args:
            code: Authorization code.
            state: State echoed by Feishu.
            error: Error parameter echoed by Feishu.
        """

        if error:
            logger.warning("OAuth callback returned error: %s", error)
            return False
        if not code:
            logger.warning("OAuth callback missing code parameter")
            return False
        if self._pending_state and state != self._pending_state:
            logger.warning("OAuth callback state mismatch")
            return False

        try:
            await self.exchange_code_for_token(code = code)
        except ApiResponseError as exc:
            logger.error("OAuth code exchange failed: %s", str(exc))
            return False

        self._pending_state = ""
        self.notify_authorization_completed()
        return True

    async def process_callback(self, callback_url: str) -> bool:
        """Parse a full callback URL and finish authorization.

        Args:
            callback_url: Redirect URL carrying code/state/error query parameters.
        """

        query = urllib.parse.parse_qs(urllib.parse.urlparse(callback_url).query)
        return await self.handle_authorization_code(
            code = query.get("code", [""])[0],
            state = query.get("state", [""])[0],
            error = query.get("error", [""])[0]
        )

    def notify_authorization_completed(self) -> None:
        """Fire the authorization completed signal.

        Args:
            self: Token manager instance.
        """

        woken = self.signal.notify()
        logger.info("Authorization completed, resumed waiters = %d", woken)

    async def _reauthorize(self, reason: str) -> bool:
        """Start browser authorization, sharing one in-flight flow among callers.

        Args:
            reason: Why re-authorization is needed.
        """

        if not self.app_id or not self.app_secret:
            logger.error("Cannot re-authorize: FEISHU_APP_ID/FEISHU_APP_SECRET are not configured")
            return False

        logger.warning("Re-authorization required: %s", reason)
        if self._pending_reauth is None:
            task = asyncio.ensure_future(self._do_reauthorize())
            task.add_done_callback(self._clear_pending_reauth)
            self._pending_reauth = task
        else:
            logger.info("Joining re-authorization already in progress")
        return await asyncio.shield(self._pending_reauth)

    async def _do_reauthorize(self) -> bool:
        """Open the authorize URL once and wait for the completion signal.

        Args:
            self: Token manager instance.
        """

        listener = self.signal.register()
        try:
            self.authorization_launcher(self.build_authorize_url())
            try:
                await asyncio.wait_for(listener, timeout = self.reauth_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Re-authorization timed out after %.0fs, please authorize and retry",
                    self.reauth_timeout
                )
                return False
        finally:
            self.signal.unregister(listener)

        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)
        return bool(self.access_token)

    async def _check_token(self) -> int:
        """Call a cheap authenticated endpoint and return its code.

        Args:
            self: Token manager instance.
        """

        response = await self.http_client.request(
            method = "GET",
            url = f"{self.base_url}{USER_INFO_PATH}",
            headers = {
                "Authorization": f"Bearer {self.access_token}"
            },
            allow_status = (400, 401, 403)
        )
        payload = decode_envelope(response = response, path = USER_INFO_PATH)
        try:
            return int(payload.get("code"))
        except (TypeError, ValueError) as exc:
            raise StructuralError(f"Invalid code in response of {USER_INFO_PATH}") from exc

    async def _do_refresh(self) -> bool:
        """Perform one refresh_token grant.

        Args:
            self: Token manager instance.
        """

        self._load_cache_if_needed()
        if not self.refresh_token:
            logger.warning("No refresh token available")
            return False

        body = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": self.app_id,
            "client_secret": self.app_secret
        }
        try:
            payload = await self._request_oauth_token(body = body)
            self._save_tokens_from_payload(payload = payload)
        except HttpRequestError as exc:
            logger.warning("Token refresh request failed: %s", str(exc))
            return False
        except ApiResponseError as exc:
            # The refresh token is proven dead, never retry with it.
            logger.warning("Token refresh rejected, clearing refresh token: %s", str(exc))
            self.refresh_token = ""
            self._save_cache()
            return False

        logger.info("User access token refreshed")
        return True

    def _clear_pending_refresh(self, task: asyncio.Task) -> None:
        if self._pending_refresh is task:
            self._pending_refresh = None

    def _clear_pending_reauth(self, task: asyncio.Task) -> None:
        if self._pending_reauth is task:
            self._pending_reauth = None

    async def _request_oauth_token(self, body: dict) -> dict:
        """Call OAuth token endpoint and parse JSON payload.

        Args:
            body: OAuth token request body.
        """

        response = await self.http_client.request(
            method = "POST",
            url = f"{self.base_url}{OAUTH_TOKEN_PATH}",
            json_body = body,
            allow_status = (400, 401)
        )

        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise ApiResponseError(
                f"Invalid OAuth JSON response: {response.text[:200]}"
            ) from exc
        if not isinstance(payload, dict):
            raise ApiResponseError(f"Unexpected OAuth payload: {str(payload)[:200]}")

        return payload

    def _save_tokens_from_payload(self, payload: dict) -> str:
        """Extract token fields, update cache, and return access token.

        Args:
            payload: OAuth token response payload, v2 flat or v1 nested in data.
        """

        source = payload
        if not payload.get("access_token") and isinstance(payload.get("data"), dict):
            source = payload["data"]

        token = str(source.get("access_token", "")).strip()
        refresh = str(source.get("refresh_token", "")).strip()
        expires_in_raw = source.get("expires_in", source.get("expires", 0))

        if not token:
            error_message = (
                payload.get("error_description")
                or payload.get("msg")
                or payload.get("error")
                or f"unexpected payload: {str(payload)[:200]}"
            )
            raise ApiResponseError(
                f"OAuth token exchange failed: {error_message}",
                code = payload.get("code")
            )

        self.access_token = token
        if refresh:
            self.refresh_token = refresh

        try:
            expires_in = int(expires_in_raw)
        except (TypeError, ValueError):
            expires_in = 0
        self._expires_at = time.time() + max(expires_in, 0)

        self._save_cache()
        return token

    def _load_cache_if_needed(self) -> None:
        """Load token cache file once if available.

        Args:
            self: Token manager instance.
        """

        if self._loaded_cache:
            return
        self._loaded_cache = True

        if not self.cache_path:
            return

        cache_file = Path(self.cache_path)
        if not cache_file.exists():
            return

        try:
            payload = json.loads(cache_file.read_text(encoding = "utf-8"))
        except (OSError, ValueError):
            logger.warning("Failed to parse token cache file: %s", str(cache_file))
            return

        cached_access = str(payload.get("access_token", "")).strip()
        cached_refresh = str(payload.get("refresh_token", "")).strip()
        if cached_access:
            self.access_token = cached_access
        if cached_refresh:
            self.refresh_token = cached_refresh
        try:
            self._expires_at = float(payload.get("expires_at", 0.0))
        except (TypeError, ValueError):
            self._expires_at = 0.0

    def _save_cache(self) -> None:
        """Persist latest tokens to local cache file.

        Args:
            self: Token manager instance.
        """

        if not self.cache_path:
            return

        cache_file = Path(self.cache_path)
        try:
            cache_file.parent.mkdir(parents = True, exist_ok = True)
            cache_file.write_text(
                json.dumps(
                    {
                        "access_token": self.access_token,
                        "refresh_token": self.refresh_token,
                        "expires_at": self._expires_at,
                        "updated_at": int(time.time())
                    },
                    ensure_ascii = False
                ),
                encoding = "utf-8"
            )
        except OSError:
            logger.warning("Failed to write token cache file: %s", str(cache_file))
