import os
import asyncio
import logging
import threading
import webbrowser
import urllib.parse

from concurrent.futures import Future
from http.server import BaseHTTPRequestHandler
from http.server import HTTPServer
from typing import Callable
from typing import Dict
from typing import Optional


logger = logging.getLogger(__name__)

CallbackHandler = Callable[[Dict[str, str]], None]


class OAuthCallbackServer:
    """One-shot local HTTP server receiving the OAuth redirect.

    Args:
        redirect_uri: Configured OAuth callback URI on localhost.
        on_callback: Function receiving code/state/error once the callback arrives.
    """

    def __init__(self, redirect_uri: str, on_callback: Optional[CallbackHandler] = None) -> None:
        parsed = urllib.parse.urlparse(redirect_uri)
        if parsed.scheme != "http":
            raise ValueError("Local OAuth callback server only supports http redirect_uri")
        self.host = parsed.hostname or ""
        if self.host not in {"127.0.0.1", "localhost"}:
            raise ValueError("Local OAuth callback server requires localhost/127.0.0.1 redirect_uri")

        self.port = parsed.port or 80
        self.callback_path = parsed.path or "/"
        self.redirect_uri = redirect_uri
        self.on_callback = on_callback
        self.result = {"code": "", "error": "", "state": ""}
        self.done = threading.Event()
        self._server: Optional[HTTPServer] = None
        self._worker: Optional[threading.Thread] = None

    def start(self, timeout_seconds: float) -> None:
        """Bind the server and serve in a daemon thread until callback or timeout.

        Args:
            timeout_seconds: Serve duration bound.
        """

        owner = self

        class OAuthCallbackHandler(BaseHTTPRequestHandler):
            """Handle one OAuth callback request."""

            def do_GET(self) -> None:
                request_url = urllib.parse.urlparse(self.path)
                if request_url.path != owner.callback_path:
                    self.send_response(404)
                    self.send_header("Content-Type", "text/plain; charset=utf-8")
                    self.end_headers()
                    self.wfile.write(b"Not Found")
                    return

                query = urllib.parse.parse_qs(request_url.query)
                for key in owner.result:
                    owner.result[key] = query.get(key, [""])[0]

                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.end_headers()
                if owner.result["code"]:
                    message = "Feishu authorization received. You can close this page."
                else:
                    message = "Feishu authorization callback received, but code is empty."
                self.wfile.write(message.encode("utf-8"))

                owner.done.set()
                if owner.on_callback is not None:
                    owner.on_callback(dict(owner.result))

            def log_message(self, fmt: str, *args) -> None:
                return

        try:
            self._server = HTTPServer((self.host, self.port), OAuthCallbackHandler)
        except OSError as exc:
            raise RuntimeError(f"Failed to bind local OAuth callback server at {self.redirect_uri}: {str(exc)}") from exc
        self._server.timeout = 0.5
        server = self._server
        deadline = threading.Event()
        timer = threading.Timer(timeout_seconds, deadline.set)
        timer.daemon = True
        timer.start()

        def _serve_until_done() -> None:
            try:
                while not self.done.is_set() and not deadline.is_set():
                    server.handle_request()
            finally:
                timer.cancel()
                server.server_close()

        self._worker = threading.Thread(target = _serve_until_done, daemon = True)
        self._worker.start()

    def wait(self, timeout_seconds: float) -> Dict[str, str]:
        """Block until the callback arrives and return its parameters.

        Args:
            timeout_seconds: Wait bound.
        """

        if self._worker is not None:
            self._worker.join(timeout = timeout_seconds + 1)
        if not self.done.is_set():
            raise TimeoutError("OAuth callback timed out, no code received")
        return dict(self.result)


def _open_or_print(authorize_url: str, open_browser: bool) -> None:
    logger.info("OAuth authorize URL: %s", authorize_url)
    if open_browser:
        webbrowser.open(authorize_url, new = 2)
        logger.info("Opened browser for OAuth authorization.")
    else:
        logger.info("Please open this OAuth URL manually in browser.")
        print(authorize_url)


def capture_oauth_code_by_local_server(
    authorize_url: str,
    redirect_uri: str,
    timeout_seconds: int,
    open_browser: bool
) -> str:
    """Capture OAuth code via one-time local callback server.

    Args:
        authorize_url: OAuth authorize URL.
        redirect_uri: Configured OAuth callback URI.
        timeout_seconds: Wait timeout for callback.
        open_browser: Whether to open default browser automatically.
    """

    server = OAuthCallbackServer(redirect_uri = redirect_uri)
    server.start(timeout_seconds = timeout_seconds)
    _open_or_print(authorize_url = authorize_url, open_browser = open_browser)
    result = server.wait(timeout_seconds = timeout_seconds)

    if result["error"]:
        raise RuntimeError(f"OAuth callback error: {result['error']}")
    if not result["code"]:
        raise RuntimeError("OAuth callback missing code parameter")
    return result["code"]


def log_exchange_outcome(future: Future) -> None:
    """Log a code exchange that was cancelled or raised on the event loop.

    Args:
        future: Future of the scheduled exchange.
    """

    if future.cancelled():
        logger.warning("OAuth code exchange was cancelled")
        return
    exc = future.exception()
    if exc is not None:
        logger.error("OAuth code exchange failed: %s", str(exc))


class LocalServerAuthorizationLauncher:
    """Authorization launcher completing re-authorization through a local callback.

    When the callback arrives, the code is exchanged on the event loop that
    started the authorization, which fires the token manager signal.

    Args:
        token_manager: Token manager exchanging the code.
        redirect_uri: Configured OAuth callback URI on localhost.
        timeout_seconds: Serve duration bound.
        open_browser: Whether to open the default browser.
    """

    def __init__(
        self,
        token_manager,
        redirect_uri: str,
        timeout_seconds: float = 300.0,
        open_browser: bool = True
    ) -> None:
        self.token_manager = token_manager
        self.redirect_uri = redirect_uri
        self.timeout_seconds = timeout_seconds
        self.open_browser = open_browser

    def __call__(self, authorize_url: str) -> None:
        loop = asyncio.get_running_loop()

        def _on_callback(result: Dict[str, str]) -> None:
            future = asyncio.run_coroutine_threadsafe(
                self.token_manager.handle_authorization_code(
                    code = result["code"],
                    state = result["state"],
                    error = result["error"]
                ),
                loop
            )
            future.add_done_callback(log_exchange_outcome)

        server = OAuthCallbackServer(redirect_uri = self.redirect_uri, on_callback = _on_callback)
        try:
            server.start(timeout_seconds = self.timeout_seconds)
        except RuntimeError as exc:
            logger.warning("Local callback server unavailable, finish authorization manually: %s", str(exc))
        _open_or_print(authorize_url = authorize_url, open_browser = self.open_browser)


def persist_user_tokens_to_env(
    access_token: str,
    refresh_token: str,
    token_cache_path: str,
    dotenv_path: str = ".env"
) -> None:
    """Persist user token fields into local .env file.

    Args:
        access_token: Latest user access token.
        refresh_token: Latest user refresh token.
        token_cache_path: Token cache file path.
        dotenv_path: Dotenv file path.
    """

    values = {
        "FEISHU_USER_ACCESS_TOKEN": access_token,
        "FEISHU_USER_REFRESH_TOKEN": refresh_token,
        "FEISHU_USER_TOKEN_CACHE_PATH": token_cache_path
    }
    for key, value in values.items():
        if value:
            _upsert_dotenv_key(dotenv_path = dotenv_path, key = key, value = value)


def _upsert_dotenv_key(dotenv_path: str, key: str, value: str) -> None:
    """Insert or update one key in dotenv file.

    Args:
        dotenv_path: Dotenv file path.
        key: Env variable key.
        value: Env variable value.
    """

    lines = []
    if os.path.exists(dotenv_path):
        with open(dotenv_path, "r", encoding = "utf-8") as fp:
            lines = fp.readlines()

    target_prefix = f"{key}="
    replaced = False
    new_lines = []
    for raw_line in lines:
        if raw_line.rstrip("\n").startswith(target_prefix):
            new_lines.append(f"{key}={value}\n")
            replaced = True
        else:
            new_lines.append(raw_line)

    if not replaced:
        if new_lines and not new_lines[-1].endswith("\n"):
            new_lines[-1] = new_lines[-1] + "\n"
        new_lines.append(f"{key}={value}\n")

    with open(dotenv_path, "w", encoding = "utf-8") as fp:
        fp.writelines(new_lines)
