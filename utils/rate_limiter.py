import time
import asyncio
import logging

from dataclasses import dataclass
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import Optional


logger = logging.getLogger(__name__)

ENDPOINT_DOCUMENT = "document"
ENDPOINT_IMPORT = "import"
ENDPOINT_BLOCK = "block"

WINDOW_SECONDS = 60.0


@dataclass
class EndpointLimit:
    """Call ceilings for one endpoint class.

    Args:
        per_second: Maximum calls per second, drives the minimum spacing.
        per_minute: Maximum calls inside one 60 second window.
    """

    per_second: float
    per_minute: int


@dataclass
class _WindowState:
    count: int = 0
    window_start: float = 0.0
    last_call: float = 0.0


DEFAULT_LIMITS = {
    ENDPOINT_DOCUMENT: EndpointLimit(per_second = 2, per_minute = 90),
    ENDPOINT_IMPORT: EndpointLimit(per_second = 1, per_minute = 90),
    ENDPOINT_BLOCK: EndpointLimit(per_second = 2, per_minute = 150)
}


class RateLimiter:
    """Local per endpoint-class throttle for Feishu open APIs.

    This only smooths our own traffic. Server side 429 responses are still
    handled by the HTTP client and retry policy.

    Args:
        limits: Optional override of the per-class limits.
        clock: Monotonic clock returning seconds.
        sleep: Awaitable sleep function.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, EndpointLimit]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self.limits = dict(DEFAULT_LIMITS)
        if limits:
            self.limits.update(limits)
        self.clock = clock
        self.sleep = sleep
        self._states: Dict[str, _WindowState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def throttle(self, endpoint_class: str) -> None:
        """Suspend until one more call of this class is safe.

        Args:
            endpoint_class: One of document/import/block.
        """

        limit = self.limits.get(endpoint_class)
        if limit is None:
            raise ValueError(f"Unknown endpoint class: {endpoint_class}")

        lock = self._locks.setdefault(endpoint_class, asyncio.Lock())
        async with lock:
            state = self._states.get(endpoint_class)
            now = self.clock()
            if state is None:
                state = _WindowState(window_start = now, last_call = float("-inf"))
                self._states[endpoint_class] = state

            if now - state.window_start >= WINDOW_SECONDS:
                state.count = 0
                state.window_start = now

            if state.count >= limit.per_minute:
                wait_seconds = WINDOW_SECONDS - (now - state.window_start)
                if wait_seconds > 0:
                    logger.info(
                        "rate limit window full: endpoint = %s, wait = %.2fs",
                        endpoint_class,
                        wait_seconds
                    )
                    await self.sleep(wait_seconds)
                now = self.clock()
                state.count = 0
                state.window_start = now
            else:
                min_interval = 1.0 / limit.per_second
                wait_seconds = state.last_call + min_interval - now
                if wait_seconds > 0:
                    await self.sleep(wait_seconds)
                    now = self.clock()

            state.last_call = now
            state.count += 1
