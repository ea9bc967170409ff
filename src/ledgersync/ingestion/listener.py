"""Sequential ingestion loop for one consumer service."""

import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.exceptions import CursorRegressionError, LedgerFetchError
from ledgersync.ingestion.cursor import CursorStore
from ledgersync.ingestion.fetcher import EventFetcher
from ledgersync.ingestion.parser import parse_event
from ledgersync.ingestion.processor import APPLIED, DEAD_LETTERED, DUPLICATE, EventProcessor

logger = logging.getLogger(__name__)

INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 60.0
WARN_EVERY_FAILURES = 10


@dataclass
class BatchResult:
    fetched: int = 0
    applied: int = 0
    duplicates: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    cursor_position: int | None = None
    interrupted: bool = False


class LedgerListener:
    """
    Fetch → parse → apply → advance, one batch at a time.

    The stored cursor is the last ledger position whose events have all been
    handled (applied, duplicate, dead-lettered, or skipped as unparseable).
    Fetching resumes at that position inclusively, so a ledger cut across two
    pages is re-read after a restart and its applied events come back as
    duplicates.

    stop() lets the in-flight event finish, then ends the loop. The cursor
    never moves past a position with unhandled events.
    """

    def __init__(
        self,
        settings: LedgerSyncSettings,
        db,
        fetcher: EventFetcher,
        processor: EventProcessor,
        cursor_store: CursorStore | None = None,
        service_name: str | None = None,
    ):
        self.settings = settings
        self.db = db
        self.fetcher = fetcher
        self.processor = processor
        self.cursor_store = cursor_store or CursorStore(settings)
        self.service_name = service_name or processor.service_name
        self._stop = asyncio.Event()
        self._paging_cursor: str | None = None
        self._last_written: int | None = None
        self._failures = 0
        self._backoff = INITIAL_BACKOFF

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stop requested for %s", self.service_name,
                        extra={"service_name": self.service_name})
        self._stop.set()

    async def _load_cursor(self) -> tuple[int | None, int]:
        """Return (stored cursor, fetch start position)."""
        async with self.db.get_session() as session:
            stored = await self.cursor_store.get_cursor(session, self.service_name)
            start = await self.cursor_store.resolve_start(session, self.service_name)
        if self._last_written is not None and (stored is None or stored < self._last_written):
            raise CursorRegressionError(
                f"Stored cursor for '{self.service_name}' is {stored}, "
                f"below the last written position {self._last_written}"
            )
        return stored, start

    async def run_once(self) -> BatchResult:
        """Fetch and handle one batch. Raises LedgerFetchError if the source is unreachable."""
        stored, start = await self._load_cursor()

        batch = await self.fetcher.fetch(start, self._paging_cursor, self.settings.batch_size)
        events = sorted(batch.events, key=lambda e: e.ledger if isinstance(e.ledger, int) else -1)
        result = BatchResult(fetched=len(events))

        handled = 0
        for raw in events:
            if self._stop.is_set():
                result.interrupted = True
                break

            parsed = parse_event(raw)
            if not parsed.success:
                logger.warning(
                    "Skipping unparseable event %s: %s (%s)",
                    raw.id or raw.tx_hash, parsed.message, parsed.reason,
                    extra={"service_name": self.service_name},
                )
                result.skipped += 1
                handled += 1
                continue

            outcome = await self.processor.process(parsed.event)
            if outcome.status == APPLIED:
                result.applied += 1
            elif outcome.status == DUPLICATE:
                result.duplicates += 1
            elif outcome.status == DEAD_LETTERED:
                result.dead_lettered += 1
            handled += 1

        if handled == len(events):
            self._paging_cursor = batch.cursor

        target = self._safe_position(events, handled)
        if target is not None and (stored is None or target > stored):
            async with self.db.get_session() as session:
                await self.cursor_store.advance_cursor(session, self.service_name, target)
            self._last_written = target
            result.cursor_position = target
        else:
            result.cursor_position = stored
        return result

    @staticmethod
    def _safe_position(events, handled: int) -> int | None:
        """Highest ledger position whose events are all handled."""
        done = [e.ledger for e in events[:handled] if isinstance(e.ledger, int)]
        if handled < len(events) and isinstance(events[handled].ledger, int):
            boundary = events[handled].ledger
            done = [p for p in done if p < boundary]
        return max(done) if done else None

    async def _wait(self, seconds: float) -> None:
        """Sleep that returns early when stop() is called."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _back_off(self, error: Exception) -> None:
        self._failures += 1
        if self._failures % WARN_EVERY_FAILURES == 0:
            logger.warning(
                "Ingestion batch failed %d times in a row, last error: %s",
                self._failures, error,
                extra={"service_name": self.service_name},
            )
        else:
            logger.debug("Ingestion batch failed: %s", error,
                         extra={"service_name": self.service_name})
        await self._wait(self._backoff)
        self._backoff = min(self._backoff * 2, MAX_BACKOFF)

    async def run(self) -> None:
        """
        Loop until stop() is called.

        Fetch failures and database errors back off and retry the batch.
        CursorRegressionError ends the loop by raising.
        """
        logger.info("Starting ledger listener %s", self.service_name,
                    extra={"service_name": self.service_name})
        while not self._stop.is_set():
            try:
                result = await self.run_once()
            except LedgerFetchError as exc:
                await self._back_off(exc)
                continue
            except SQLAlchemyError as exc:
                logger.error("Database error in listener %s: %s", self.service_name, exc,
                             extra={"service_name": self.service_name})
                await self._back_off(exc)
                continue

            self._failures = 0
            self._backoff = INITIAL_BACKOFF
            if result.fetched == 0:
                await self._wait(self.settings.poll_interval)

        logger.info("Ledger listener %s stopped", self.service_name,
                    extra={"service_name": self.service_name})
