"""Per-consumer ledger cursor persistence."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.exceptions import CursorRegressionError
from ledgersync.common.models import utcnow
from ledgersync.ingestion.models import CursorStateModel

logger = logging.getLogger(__name__)


class CursorStore:
    """Last successfully processed ledger position, one row per service name."""

    def __init__(self, settings: LedgerSyncSettings):
        self.settings = settings

    async def get_state(
        self, session: AsyncSession, service_name: str,
    ) -> CursorStateModel | None:
        result = await session.execute(
            select(CursorStateModel).where(CursorStateModel.service_name == service_name)
        )
        return result.scalar_one_or_none()

    async def get_cursor(self, session: AsyncSession, service_name: str) -> int | None:
        state = await self.get_state(session, service_name)
        return state.last_processed_position if state else None

    async def resolve_start(self, session: AsyncSession, service_name: str) -> int:
        """Stored cursor, or the configured start position on first run."""
        cursor = await self.get_cursor(session, service_name)
        if cursor is None:
            return self.settings.start_position
        return cursor

    async def advance_cursor(
        self, session: AsyncSession, service_name: str, position: int,
    ) -> CursorStateModel:
        """Move the cursor forward. Moving it backwards raises CursorRegressionError."""
        state = await self.get_state(session, service_name)
        now = utcnow()
        if state is None:
            state = CursorStateModel(
                service_name=service_name,
                last_processed_position=position,
                last_processed_at=now,
            )
            session.add(state)
        else:
            if position < state.last_processed_position:
                raise CursorRegressionError(
                    f"Cursor for '{service_name}' would regress from "
                    f"{state.last_processed_position} to {position}"
                )
            state.last_processed_position = position
            state.last_processed_at = now
        await session.flush()
        logger.info(
            "Cursor for %s advanced to %d", service_name, position,
            extra={"service_name": service_name},
        )
        return state
