import asyncio
import logging

from dataclasses import dataclass
from typing import Any
from typing import Awaitable
from typing import Callable

from core.exceptions import HttpRequestError
from core.exceptions import RateLimitError


logger = logging.getLogger(__name__)


def is_rate_limited(exc: Exception) -> bool:
    """Check whether an error is a frequency limit rejection.

    Args:
        exc: Raised exception.
    """

    if isinstance(exc, RateLimitError):
        return True
    return isinstance(exc, HttpRequestError) and exc.status_code == 429


def is_any_error(exc: Exception) -> bool:
    """Treat every exception as retryable.

    Args:
        exc: Raised exception.
    """

    return True


@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff.

    Args:
        max_attempts: Total attempts including the first call.
        base_delay: Delay in seconds before the second attempt.
        max_delay: Upper bound for one backoff delay.
        retryable: Predicate deciding whether an exception is worth retrying.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    retryable: Callable[[Exception], bool] = is_rate_limited

    def delay_for(self, attempt: int) -> float:
        """Return backoff delay after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed.
        """

        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


async def run_with_retry(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> Any:
    """Run one async operation under a retry policy.

    Args:
        operation: Zero-arg coroutine factory, invoked once per attempt.
        policy: Retry policy.
        label: Short name used in logs.
        sleep: Awaitable sleep function.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if attempt >= policy.max_attempts or not policy.retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed, retry %d/%d after %.1fs: %s",
                label,
                attempt,
                policy.max_attempts,
                delay,
                str(exc)
            )
            await sleep(delay)
