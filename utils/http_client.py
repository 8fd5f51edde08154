import json
import asyncio
import logging

from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from core.exceptions import HttpRequestError


logger = logging.getLogger(__name__)

RATE_LIMIT_RESET_HEADER = "x-ogw-ratelimit-reset"
MAX_RATE_LIMIT_WAIT_SECONDS = 60.0


@dataclass
class MultipartFile:
    """One file payload in multipart upload.

    Args:
        filename: Uploaded filename.
        content: Binary payload.
        content_type: MIME type value.
    """

    filename: str
    content: bytes
    content_type: str


@dataclass
class HttpResponse:
    """A lightweight HTTP response wrapper.

    Args:
        status_code: HTTP response status code.
        headers: Response headers map.
        body: Raw response bytes.
    """

    status_code: int
    headers: Dict[str, str]
    body: bytes

    @property
    def text(self) -> str:
        """Decode response bytes to UTF-8 text.

        Args:
            self: Response object.
        """

        return self.body.decode("utf-8", errors = "replace")

    def json(self) -> dict:
        """Parse response body as json.

        Args:
            self: Response object.
        """

        return json.loads(self.text)


class HttpClient:
    """Async HTTP client with retry and JSON utilities.

    Args:
        timeout: Request timeout in seconds.
        max_retries: Number of attempts for temporary failures.
        retry_backoff: Backoff multiplier used between retries.
        user_agent: User agent value sent in each request.
        transport: Optional httpx transport, used by tests to fake the remote side.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        user_agent: str = "feishu-doc-sync/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.user_agent = user_agent
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[dict] = None,
        data: Optional[Dict[str, str]] = None,
        files: Optional[Dict[str, MultipartFile]] = None,
        allow_status: Optional[tuple] = None,
        timeout: Optional[float] = None
    ) -> HttpResponse:
        """Perform an HTTP request.

        Args:
            method: HTTP method.
            url: Target URL.
            headers: Optional request headers.
            params: Optional query parameters.
            json_body: Optional JSON body.
            data: Optional form fields.
            files: Optional multipart files map.
            allow_status: Optional status codes that should not raise error.
            timeout: Optional per-request timeout overriding the client default.
        """

        allow_status = allow_status or tuple()
        request_headers = {"User-Agent": self.user_agent}
        if headers:
            request_headers.update(headers)

        request_kwargs = {
            "method": method.upper(),
            "url": url,
            "headers": request_headers,
            "params": params,
            "timeout": timeout if timeout is not None else self.timeout
        }
        if files:
            request_kwargs["data"] = data or {}
            request_kwargs["files"] = {
                key: (item.filename, item.content, item.content_type)
                for key, item in files.items()
            }
        elif json_body is not None:
            request_kwargs["json"] = json_body
        elif data is not None:
            request_kwargs["data"] = data

        client = self._get_client()
        attempts = 0
        while True:
            attempts += 1
            try:
                raw = await client.request(**request_kwargs)
            except httpx.TransportError as exc:
                if self._should_retry(status_code = 503, attempts = attempts):
                    await self._sleep(attempts = attempts, headers = {})
                    continue
                raise HttpRequestError(
                    f"Network error for {method.upper()} {url}: {str(exc)}"
                ) from exc

            response = HttpResponse(
                status_code = raw.status_code,
                headers = dict(raw.headers.items()),
                body = raw.content
            )
            if response.status_code < 400 or response.status_code in allow_status:
                return response

            if self._should_retry(status_code = response.status_code, attempts = attempts):
                logger.warning(
                    "HTTP retry: method = %s, url = %s, status = %d, attempt = %d",
                    method.upper(),
                    url,
                    response.status_code,
                    attempts
                )
                await self._sleep(attempts = attempts, headers = response.headers)
                continue

            raise HttpRequestError(
                f"HTTP {response.status_code} for {method.upper()} {url}: {response.text[:500]}",
                status_code = response.status_code,
                body = response.text
            )

    async def aclose(self) -> None:
        """Close the underlying httpx client.

        Args:
            self: Client instance.
        """

        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Lazily create the shared httpx client.

        Args:
            self: Client instance.
        """

        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout = self.timeout,
                transport = self.transport
            )
        return self._client

    def _should_retry(self, status_code: int, attempts: int) -> bool:
        """Decide if request can be retried.

        Args:
            status_code: HTTP status code.
            attempts: Current attempt count.
        """

        if attempts >= self.max_retries:
            return False
        return status_code >= 500 or status_code in {408, 429}

    async def _sleep(self, attempts: int, headers: Dict[str, str]) -> None:
        """Apply retry backoff sleep, preferring the server rate limit reset hint.

        Args:
            attempts: Current attempt count.
            headers: Response headers of the failed attempt.
        """

        delay = self.retry_backoff * (2 ** (attempts - 1))
        reset_raw = ""
        for key, value in headers.items():
            if key.lower() == RATE_LIMIT_RESET_HEADER:
                reset_raw = value
                break
        if reset_raw:
            try:
                reset_seconds = float(reset_raw)
            except ValueError:
                reset_seconds = 0.0
            if reset_seconds > 0:
                delay = min(reset_seconds, MAX_RATE_LIMIT_WAIT_SECONDS)
        await asyncio.sleep(delay)
