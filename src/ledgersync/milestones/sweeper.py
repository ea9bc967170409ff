"""Background task that expires milestones whose deadline has passed."""

import asyncio
import logging

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.milestones.service import MilestoneService

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Runs MilestoneService.sweep_expired every ``expiration_sweep_interval`` seconds."""

    def __init__(self, settings: LedgerSyncSettings, db, milestone_service: MilestoneService):
        self.settings = settings
        self.db = db
        self.milestones = milestone_service
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    async def run_once(self) -> list[str]:
        async with self.db.get_session() as session:
            expired = await self.milestones.sweep_expired(session)
        if expired:
            logger.info("Expired %d milestone(s): %s", len(expired), ", ".join(expired))
        return expired

    async def _loop(self) -> None:
        interval = self.settings.expiration_sweep_interval
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Expiration sweep failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.settings.expiration_sweep_interval <= 0 or self._task is not None:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
