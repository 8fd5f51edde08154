import asyncio
import logging
import time

from typing import Awaitable
from typing import Callable

from core.exceptions import AppError
from data.models import ImportJobResult


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 25
# Attempts within this range tolerate status 2 without a token.
AMBIGUOUS_FAILURE_TOLERANCE = 8
SUCCESS_STATUSES = {0, 3}
AMBIGUOUS_FAILURE_STATUS = 2


def progressive_delay(attempt: int) -> float:
    """Return delay before the next status check.

    Args:
        attempt: 1-based attempt number that just ran.
    """

    if attempt <= 3:
        return 1.0
    if attempt <= 8:
        return 2.0
    return 3.0


class ImportJobPoller:
    """Turn one import ticket into a document id within a bounded wait.

    Args:
        drive_service: Service exposing get_import_status(ticket).
        sleep: Awaitable sleep function.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        drive_service,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.drive_service = drive_service
        self.sleep = sleep
        self.clock = clock

    async def wait_for_completion(self, ticket: str, timeout_seconds: float = 15.0) -> ImportJobResult:
        """Poll import task status until success, failure or timeout.

        A failure status that still carries a document token counts as
        success: the document exists even when the platform reports an
        error.

        Args:
            ticket: Import task ticket.
            timeout_seconds: Overall wait bound.
        """

        started = self.clock()
        attempt = 0
        while attempt < MAX_ATTEMPTS:
            elapsed = self.clock() - started
            if elapsed >= timeout_seconds:
                logger.warning("Import timed out: ticket = %s, elapsed = %.1fs", ticket, elapsed)
                return ImportJobResult(
                    success = False,
                    error = f"Import timed out after {elapsed:.1f}s",
                    attempts = attempt
                )

            attempt += 1
            try:
                status = await self.drive_service.get_import_status(ticket = ticket)
            except AppError as exc:
                logger.warning("Import status check %d failed: %s", attempt, str(exc))
                await self.sleep(progressive_delay(attempt))
                continue

            logger.debug(
                "Import status: ticket = %s, attempt = %d, job_status = %s, token = %s",
                ticket,
                attempt,
                str(status.job_status),
                status.token
            )

            if status.job_status in SUCCESS_STATUSES and status.token:
                logger.info("Import succeeded: document_id = %s", status.token)
                return ImportJobResult(success = True, document_id = status.token, attempts = attempt)

            if status.job_status == AMBIGUOUS_FAILURE_STATUS:
                if status.token:
                    logger.warning(
                        "Import reported failure but produced document %s, treating as success",
                        status.token
                    )
                    return ImportJobResult(success = True, document_id = status.token, attempts = attempt)
                if attempt > AMBIGUOUS_FAILURE_TOLERANCE:
                    reason = status.error_message or "import job failed"
                    logger.error("Import failed: ticket = %s, reason = %s", ticket, reason)
                    return ImportJobResult(success = False, error = reason, attempts = attempt)

            await self.sleep(progressive_delay(attempt))

        return ImportJobResult(
            success = False,
            error = f"Import did not finish after {MAX_ATTEMPTS} attempts",
            attempts = attempt
        )
