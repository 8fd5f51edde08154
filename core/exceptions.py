from typing import Optional


class AppError(Exception):
    """Base application error."""


class ValidationError(AppError):
    """Raised when CLI arguments or configuration are invalid."""


class HttpRequestError(AppError):
    """Raised when an HTTP request fails.

    Args:
        message: Error summary.
        status_code: HTTP status code, 0 for network errors.
        body: Raw response text when available.
    """

    def __init__(self, message: str, status_code: int = 0, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ApiResponseError(AppError):
    """Raised when Feishu API returns an error or an invalid payload.

    Args:
        message: Error summary.
        code: Feishu business code when present.
        status_code: HTTP status code of the response carrying the payload.
    """

    def __init__(self, message: str, code: Optional[int] = None, status_code: int = 0) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class RateLimitError(ApiResponseError):
    """Raised when Feishu rejects a call by frequency limit."""


class StructuralError(ApiResponseError):
    """Raised when a response misses required fields or has an unexpected shape."""


class AuthError(AppError):
    """Raised when no valid user token is available and re-authorization did not complete."""


class ImportFailedError(AppError):
    """Raised when an uploaded markdown file was not converted into a document.

    Args:
        message: Failure reason.
        file_token: Token of the uploaded source file, still reachable as raw file.
    """

    def __init__(self, message: str, file_token: str = "") -> None:
        super().__init__(message)
        self.file_token = file_token
