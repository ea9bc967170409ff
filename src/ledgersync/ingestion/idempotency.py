"""Exactly-once bookkeeping for applied ledger events."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.common.models import utcnow
from ledgersync.ingestion.models import ProcessedEventModel
from ledgersync.ingestion.parser import ParsedEvent

logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """Tracks which event ids have already been applied.

    The check, the state change and the record must share one session so
    they commit or roll back together. The primary key on ``event_id`` is
    the only uniqueness authority.
    """

    async def has_been_applied(self, session: AsyncSession, event_id: str) -> bool:
        result = await session.execute(
            select(ProcessedEventModel.event_id).where(
                ProcessedEventModel.event_id == event_id
            )
        )
        return result.scalar_one_or_none() is not None

    async def record_applied(
        self,
        session: AsyncSession,
        event: ParsedEvent,
        service_name: str | None = None,
    ) -> ProcessedEventModel:
        """Insert the processed marker. A concurrent insert surfaces as IntegrityError on flush."""
        record = ProcessedEventModel(
            event_id=event.event_id,
            transaction_hash=event.transaction_hash,
            event_index=event.event_index,
            ledger_position=event.ledger_position,
            service_name=service_name,
            processed_at=utcnow(),
        )
        session.add(record)
        await session.flush()
        logger.debug("Recorded event %s as applied", event.event_id,
                     extra={"event_id": event.event_id, "service_name": service_name})
        return record
