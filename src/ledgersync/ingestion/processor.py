"""Exactly-once application of parsed ledger events."""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.exceptions import DeadLetterNotFoundError, DeadLetterStateError
from ledgersync.common.retry import RetryExecutor
from ledgersync.deadletter.service import DeadLetterService
from ledgersync.ingestion.handlers import HandlerRegistry
from ledgersync.ingestion.idempotency import IdempotencyGuard
from ledgersync.ingestion.parser import ParsedEvent

logger = logging.getLogger(__name__)

JOB_TYPE = "ledger_event"

APPLIED = "applied"
DUPLICATE = "duplicate"
DEAD_LETTERED = "dead_lettered"
FAILED = "failed"


@dataclass
class ProcessingResult:
    event_id: str
    status: str
    attempts: int = 0
    dead_letter_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        """True once the event needs no further work from the ingestion loop."""
        return self.status in (APPLIED, DUPLICATE, DEAD_LETTERED)


class EventProcessor:
    """
    Check, apply and record one event per transaction, with bounded retry.

    Each attempt opens its own session: the idempotency check, the handler
    and the processed-event insert commit together or not at all. When the
    insert loses a race to another consumer the event is reported as a
    duplicate. Exhausted events land in the dead-letter queue and never
    raise out of process().
    """

    def __init__(
        self,
        settings: LedgerSyncSettings,
        db,
        handlers: HandlerRegistry,
        executor: RetryExecutor,
        dead_letters: DeadLetterService,
        guard: IdempotencyGuard | None = None,
        service_name: str | None = None,
    ):
        self.settings = settings
        self.db = db
        self.handlers = handlers
        self.executor = executor
        self.dead_letters = dead_letters
        self.guard = guard or IdempotencyGuard()
        self.service_name = service_name or settings.listener_service_name

    async def _apply_once(self, event: ParsedEvent) -> str:
        try:
            async with self.db.get_session() as session:
                if await self.guard.has_been_applied(session, event.event_id):
                    return DUPLICATE
                await self.handlers.apply(session, event)
                await self.guard.record_applied(session, event, self.service_name)
                return APPLIED
        except IntegrityError:
            async with self.db.get_session() as session:
                if await self.guard.has_been_applied(session, event.event_id):
                    return DUPLICATE
            raise

    async def process(self, event: ParsedEvent) -> ProcessingResult:
        payload = {"service_name": self.service_name, "event": event.to_dict()}
        result = await self.executor.run(JOB_TYPE, payload, lambda: self._apply_once(event))

        if not result.success:
            return ProcessingResult(
                event_id=event.event_id,
                status=DEAD_LETTERED,
                attempts=result.attempts,
                dead_letter_id=result.dead_letter_id,
                error=result.error,
            )

        if result.result == DUPLICATE:
            logger.debug("Skipping already applied event %s", event.event_id,
                         extra={"event_id": event.event_id, "service_name": self.service_name})
        else:
            logger.info("Applied %s event %s", event.event_type, event.event_id,
                        extra={"event_id": event.event_id, "service_name": self.service_name})
        return ProcessingResult(
            event_id=event.event_id, status=result.result, attempts=result.attempts,
        )

    async def reprocess_dead_letter(self, entry_id: str) -> ProcessingResult:
        """
        Replay a dead-lettered ledger event once, outside the retry loop.

        Success resolves the entry; failure puts it back in the queue with
        its retry count bumped.
        """
        async with self.db.get_session() as session:
            entry = await self.dead_letters.get(session, entry_id)
            if entry is None:
                raise DeadLetterNotFoundError()
            if entry.job_type != JOB_TYPE:
                raise DeadLetterStateError(
                    f"Entries of type '{entry.job_type}' cannot be reprocessed here"
                )
            await self.dead_letters.mark_reprocessing(session, entry_id)
            stored = dict((entry.payload or {}).get("event") or {})

        event_id = stored.get("event_id", "")
        try:
            event = ParsedEvent.from_dict(stored)
            outcome = await self._apply_once(event)
        except Exception as exc:
            logger.warning("Reprocessing dead-letter entry %s failed: %s", entry_id, exc,
                           extra={"dead_letter_id": entry_id, "event_id": event_id or None})
            async with self.db.get_session() as session:
                await self.dead_letters.return_to_pending(session, entry_id, exc)
            return ProcessingResult(event_id=event_id, status=FAILED, attempts=1, error=str(exc))

        async with self.db.get_session() as session:
            await self.dead_letters.resolve(session, entry_id)
        logger.info("Reprocessed dead-letter entry %s", entry_id,
                    extra={"dead_letter_id": entry_id, "event_id": event_id})
        return ProcessingResult(
            event_id=event_id, status=outcome, attempts=1, dead_letter_id=entry_id,
        )
