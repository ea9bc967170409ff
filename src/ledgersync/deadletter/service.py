"""Dead-letter service — record, inspect, discard, and reprocess exhausted jobs."""

import logging
import traceback
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.common.exceptions import DeadLetterNotFoundError, DeadLetterStateError
from ledgersync.common.models import utcnow
from ledgersync.deadletter.models import DeadLetterModel

logger = logging.getLogger(__name__)


class DeadLetterService:
    """Holds units of work that exhausted their retry budget.

    Entries are never purged; operators discard them or reprocess them by hand.
    """

    # ── Write ──

    async def add(
        self,
        session: AsyncSession,
        job_type: str,
        payload: dict[str, Any],
        error: BaseException | str,
        retry_count: int = 0,
    ) -> DeadLetterModel:
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            stack = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        else:
            message, stack = error, None

        now = utcnow()
        entry = DeadLetterModel(
            job_type=job_type,
            payload=payload,
            error_message=message,
            stack_trace=stack,
            retry_count=retry_count,
            status="pending",
            first_failed_at=now,
            last_failed_at=now,
        )
        session.add(entry)
        await session.flush()
        logger.error(
            "Job %s moved to dead-letter queue after %d attempt(s): %s",
            job_type, retry_count, message,
            extra={"job_type": job_type, "dead_letter_id": entry.id},
        )
        return entry

    async def discard(
        self, session: AsyncSession, entry_id: str,
    ) -> Optional[DeadLetterModel]:
        """Mark an entry discarded. Discarding twice keeps the first resolution."""
        entry = await self.get(session, entry_id)
        if entry is None:
            return None
        if entry.status != "discarded":
            entry.status = "discarded"
            entry.resolved_at = utcnow()
            await session.flush()
            logger.info("Discarded dead-letter entry %s", entry_id,
                        extra={"dead_letter_id": entry_id})
        return entry

    # ── Manual reprocessing ──

    async def mark_reprocessing(
        self, session: AsyncSession, entry_id: str,
    ) -> DeadLetterModel:
        entry = await self.get(session, entry_id)
        if entry is None:
            raise DeadLetterNotFoundError()
        if entry.status == "discarded":
            raise DeadLetterStateError("Entry already discarded")
        if entry.status == "reprocessing":
            raise DeadLetterStateError("Entry is already being reprocessed")
        entry.status = "reprocessing"
        await session.flush()
        return entry

    async def resolve(
        self, session: AsyncSession, entry_id: str,
    ) -> DeadLetterModel:
        """Record a successful manual reprocess."""
        entry = await self.get(session, entry_id)
        if entry is None:
            raise DeadLetterNotFoundError()
        entry.resolved_at = utcnow()
        await session.flush()
        return entry

    async def return_to_pending(
        self, session: AsyncSession, entry_id: str, error: BaseException | str,
    ) -> DeadLetterModel:
        """Record a failed manual reprocess and put the entry back in the queue."""
        entry = await self.get(session, entry_id)
        if entry is None:
            raise DeadLetterNotFoundError()
        entry.status = "pending"
        entry.retry_count += 1
        entry.last_failed_at = utcnow()
        if isinstance(error, BaseException):
            entry.error_message = str(error) or type(error).__name__
            entry.stack_trace = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        else:
            entry.error_message = error
            entry.stack_trace = None
        await session.flush()
        return entry

    # ── Read ──

    async def get(
        self, session: AsyncSession, entry_id: str,
    ) -> Optional[DeadLetterModel]:
        result = await session.execute(
            select(DeadLetterModel).where(DeadLetterModel.id == entry_id)
        )
        return result.scalar_one_or_none()

    async def list_entries(
        self,
        session: AsyncSession,
        job_type: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeadLetterModel]:
        """Entries matching the filters, most recently failed first."""
        query = select(DeadLetterModel)
        if job_type is not None:
            query = query.where(DeadLetterModel.job_type == job_type)
        if status is not None:
            query = query.where(DeadLetterModel.status == status)
        query = (
            query.order_by(DeadLetterModel.last_failed_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await session.execute(query)
        return list(result.scalars().all())

    async def metrics(self, session: AsyncSession) -> dict[str, Any]:
        by_status_rows = await session.execute(
            select(DeadLetterModel.status, func.count())
            .group_by(DeadLetterModel.status)
        )
        by_status = {status: count for status, count in by_status_rows.all()}

        by_type_rows = await session.execute(
            select(DeadLetterModel.job_type, func.count())
            .group_by(DeadLetterModel.job_type)
        )
        by_job_type = {job_type: count for job_type, count in by_type_rows.all()}

        return {
            "total": sum(by_status.values()),
            "pending": by_status.get("pending", 0),
            "reprocessing": by_status.get("reprocessing", 0),
            "discarded": by_status.get("discarded", 0),
            "by_job_type": by_job_type,
        }
