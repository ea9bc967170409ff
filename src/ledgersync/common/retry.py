"""Bounded retry with linear backoff, handing exhausted jobs to the dead-letter queue."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.deadletter.service import DeadLetterService

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS = (
    "connection",
    "econnrefused",
    "enotfound",
    "etimedout",
    "deadlock",
    "lock timeout",
    "lock wait timeout",
    "database is locked",
    "timeout",
    "timed out",
)


def is_transient(error: BaseException) -> bool:
    """Heuristic: connection failures, lock contention, and timeouts are worth retrying."""
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


@dataclass
class JobResult(Generic[T]):
    """Outcome of a unit of work run through the executor."""
    success: bool
    attempts: int
    result: Optional[T] = None
    dead_letter_id: Optional[str] = None
    error: Optional[str] = None


class RetryExecutor:
    """Run a named unit of work up to ``max_attempts`` times.

    The delay before attempt ``n + 1`` is ``base_delay * n``. Waiting is an
    ``asyncio`` suspension, so other jobs keep running while one backs off.
    After the last failure exactly one dead-letter entry is written; the
    individual retries are not persisted.
    """

    def __init__(
        self,
        settings: LedgerSyncSettings,
        db,
        dead_letters: DeadLetterService,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.db = db
        self.dead_letters = dead_letters
        self._sleep = sleep

    async def run(
        self,
        job_type: str,
        payload: dict[str, Any],
        work: Callable[[], Awaitable[T]],
        max_attempts: int | None = None,
        base_delay: float | None = None,
        should_retry: Callable[[BaseException], bool] | None = None,
    ) -> JobResult[T]:
        if max_attempts is None:
            max_attempts = self.settings.retry_max_attempts
        if base_delay is None:
            base_delay = self.settings.retry_base_delay
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        last_error: BaseException | None = None
        attempt = 0
        while attempt < max_attempts:
            attempt += 1
            try:
                result = await work()
                return JobResult(success=True, attempts=attempt, result=result)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Job %s attempt %d/%d failed: %s",
                    job_type, attempt, max_attempts, exc,
                    extra={"job_type": job_type},
                )
                if should_retry is not None and not should_retry(exc):
                    break
                if attempt < max_attempts:
                    await self._sleep(base_delay * attempt)

        async with self.db.get_session() as session:
            entry = await self.dead_letters.add(
                session, job_type, payload, last_error, retry_count=attempt,
            )
            dead_letter_id = entry.id

        return JobResult(
            success=False,
            attempts=attempt,
            dead_letter_id=dead_letter_id,
            error=str(last_error),
        )

    async def run_with_retries(
        self,
        job_type: str,
        payload: dict[str, Any],
        handler: Callable[[dict[str, Any]], Awaitable[T]],
        max_retries: int = 3,
        retry_delay: float = 1.0,
        should_retry: Callable[[BaseException], bool] | None = None,
    ) -> JobResult[T]:
        """Job-processor form: one initial attempt plus ``max_retries`` retries."""
        return await self.run(
            job_type,
            payload,
            lambda: handler(payload),
            max_attempts=max_retries + 1,
            base_delay=retry_delay,
            should_retry=should_retry,
        )
