"""Milestone service — milestones, verifier assignments, and status aggregation."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.exceptions import (
    MilestoneNotFoundError,
    VaultNotFoundError,
    VerifierNotFoundError,
)
from ledgersync.common.models import as_utc, utcnow
from ledgersync.milestones.aggregator import POLICIES, Aggregate, resolve_status
from ledgersync.milestones.models import (
    MILESTONE_TERMINAL_STATUSES,
    MilestoneModel,
    VaultModel,
)
from ledgersync.verification.models import MilestoneVerifierModel, VerifierModel

logger = logging.getLogger(__name__)


class MilestoneService:
    """Milestone lifecycle and verifier management."""

    def __init__(self, settings: LedgerSyncSettings, webhook_service=None):
        self.settings = settings
        self.webhook_service = webhook_service

    # ── Vaults ──

    async def get_vault(
        self, session: AsyncSession, vault_id: str,
    ) -> Optional[VaultModel]:
        result = await session.execute(select(VaultModel).where(VaultModel.id == vault_id))
        return result.scalar_one_or_none()

    # ── Milestones ──

    async def create_milestone(
        self,
        session: AsyncSession,
        vault_id: str,
        title: str,
        deadline: datetime,
        milestone_id: str | None = None,
        description: str = "",
        target_amount: str = "0",
        approval_policy: str = "all",
        verifier_ids: list[str] | None = None,
    ) -> MilestoneModel:
        if approval_policy not in POLICIES:
            raise ValueError(f"Unknown approval policy: {approval_policy}")
        if await self.get_vault(session, vault_id) is None:
            raise VaultNotFoundError(f"Vault not found: {vault_id}")

        milestone = MilestoneModel(
            vault_id=vault_id,
            title=title,
            description=description,
            target_amount=target_amount,
            approval_policy=approval_policy,
            deadline=as_utc(deadline).astimezone(timezone.utc),
            status="pending",
        )
        if milestone_id:
            milestone.id = milestone_id
        session.add(milestone)
        await session.flush()

        for verifier_id in verifier_ids or []:
            await self.ensure_verifier(session, verifier_id)
            await self.assign_verifier(session, milestone.id, verifier_id)

        logger.info("Created milestone %s on vault %s", milestone.id, vault_id,
                    extra={"milestone_id": milestone.id})
        return milestone

    async def get_milestone(
        self, session: AsyncSession, milestone_id: str,
    ) -> Optional[MilestoneModel]:
        result = await session.execute(
            select(MilestoneModel).where(MilestoneModel.id == milestone_id)
        )
        return result.scalar_one_or_none()

    async def list_milestones(
        self,
        session: AsyncSession,
        vault_id: str | None = None,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[MilestoneModel], int]:
        """List milestones with count. Returns (items, total)."""
        filters = []
        if vault_id is not None:
            filters.append(MilestoneModel.vault_id == vault_id)
        if status is not None:
            filters.append(MilestoneModel.status == status)

        count_q = select(func.count(MilestoneModel.id))
        if filters:
            count_q = count_q.where(*filters)
        total = (await session.execute(count_q)).scalar() or 0

        query = select(MilestoneModel)
        if filters:
            query = query.where(*filters)
        query = query.order_by(MilestoneModel.created_at.desc()).offset(offset).limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all()), total

    # ── Verifiers ──

    async def get_verifier(
        self, session: AsyncSession, verifier_id: str,
    ) -> Optional[VerifierModel]:
        result = await session.execute(
            select(VerifierModel).where(VerifierModel.id == verifier_id)
        )
        return result.scalar_one_or_none()

    async def ensure_verifier(
        self, session: AsyncSession, verifier_id: str, name: str = "",
    ) -> VerifierModel:
        """Return the verifier, registering it as active if unknown."""
        verifier = await self.get_verifier(session, verifier_id)
        if verifier is None:
            verifier = VerifierModel(id=verifier_id, name=name or verifier_id, active=True)
            session.add(verifier)
            await session.flush()
        return verifier

    async def list_verifiers(
        self, session: AsyncSession, active: bool | None = None,
    ) -> list[VerifierModel]:
        query = select(VerifierModel)
        if active is not None:
            query = query.where(VerifierModel.active == active)
        result = await session.execute(query.order_by(VerifierModel.created_at))
        return list(result.scalars().all())

    async def get_assignment(
        self, session: AsyncSession, milestone_id: str, verifier_id: str,
    ) -> Optional[MilestoneVerifierModel]:
        result = await session.execute(
            select(MilestoneVerifierModel).where(
                MilestoneVerifierModel.milestone_id == milestone_id,
                MilestoneVerifierModel.verifier_id == verifier_id,
            )
        )
        return result.scalar_one_or_none()

    async def assign_verifier(
        self, session: AsyncSession, milestone_id: str, verifier_id: str,
    ) -> MilestoneVerifierModel:
        """Attach a verifier to a milestone. Assigning twice returns the existing row."""
        if await self.get_milestone(session, milestone_id) is None:
            raise MilestoneNotFoundError()
        if await self.get_verifier(session, verifier_id) is None:
            raise VerifierNotFoundError()

        assignment = await self.get_assignment(session, milestone_id, verifier_id)
        if assignment is None:
            assignment = MilestoneVerifierModel(
                milestone_id=milestone_id,
                verifier_id=verifier_id,
                decision="pending",
            )
            session.add(assignment)
            await session.flush()
        return assignment

    async def list_assignments(
        self, session: AsyncSession, milestone_id: str,
    ) -> list[tuple[MilestoneVerifierModel, VerifierModel]]:
        result = await session.execute(
            select(MilestoneVerifierModel, VerifierModel)
            .join(VerifierModel, VerifierModel.id == MilestoneVerifierModel.verifier_id)
            .where(MilestoneVerifierModel.milestone_id == milestone_id)
            .order_by(MilestoneVerifierModel.created_at)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def deactivate_verifier(
        self, session: AsyncSession, verifier_id: str,
    ) -> VerifierModel:
        """
        Deactivate a verifier and re-evaluate every open milestone it was on.

        Deactivated verifiers drop out of the voting population, which can
        complete an aggregation that was waiting on them. Terminal
        milestones are left untouched.
        """
        verifier = await self.get_verifier(session, verifier_id)
        if verifier is None:
            raise VerifierNotFoundError()
        if not verifier.active:
            return verifier

        verifier.active = False
        verifier.deactivated_at = utcnow()
        await session.flush()

        result = await session.execute(
            select(MilestoneModel.id)
            .join(MilestoneVerifierModel, MilestoneVerifierModel.milestone_id == MilestoneModel.id)
            .where(
                MilestoneVerifierModel.verifier_id == verifier_id,
                MilestoneModel.status.not_in(MILESTONE_TERMINAL_STATUSES),
            )
        )
        for milestone_id in [row[0] for row in result.all()]:
            await self.evaluate(session, milestone_id)

        logger.info("Deactivated verifier %s", verifier_id)
        return verifier

    # ── Aggregation ──

    async def active_decisions(
        self, session: AsyncSession, milestone_id: str,
    ) -> list[str]:
        """Decisions of the milestone's currently active verifiers."""
        result = await session.execute(
            select(MilestoneVerifierModel.decision)
            .join(VerifierModel, VerifierModel.id == MilestoneVerifierModel.verifier_id)
            .where(
                MilestoneVerifierModel.milestone_id == milestone_id,
                VerifierModel.active.is_(True),
            )
        )
        return [row[0] for row in result.all()]

    async def evaluate(
        self,
        session: AsyncSession,
        milestone_id: str,
        now: datetime | None = None,
    ) -> Aggregate:
        """Recompute the milestone status from active verifier decisions."""
        milestone = await self.get_milestone(session, milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError()

        decisions = await self.active_decisions(session, milestone_id)
        agg = resolve_status(
            milestone.status,
            decisions,
            milestone.approval_policy,
            as_utc(milestone.deadline),
            now=now,
        )
        if agg.status != milestone.status:
            await self._finalize(session, milestone, agg)
        return agg

    async def sweep_expired(
        self, session: AsyncSession, now: datetime | None = None,
    ) -> list[str]:
        """Expire every pending milestone whose deadline has passed. Returns their ids."""
        now = now or utcnow()
        result = await session.execute(
            select(MilestoneModel.id).where(
                MilestoneModel.status == "pending",
                MilestoneModel.deadline < now,
            )
        )
        expired = []
        for milestone_id in [row[0] for row in result.all()]:
            agg = await self.evaluate(session, milestone_id, now=now)
            if agg.status == "expired":
                expired.append(milestone_id)
        return expired

    async def _finalize(
        self, session: AsyncSession, milestone: MilestoneModel, agg: Aggregate,
    ) -> None:
        previous = milestone.status
        milestone.status = agg.status
        if agg.is_final:
            milestone.finalized_at = utcnow()
        await session.flush()
        logger.info(
            "Milestone %s moved from %s to %s: %s",
            milestone.id, previous, agg.status, agg.reason,
            extra={"milestone_id": milestone.id},
        )

        if self.webhook_service and agg.is_final:
            await self.webhook_service.dispatch(
                session, f"milestone.{agg.status}", self.status_payload(milestone, agg),
            )

    @staticmethod
    def status_payload(milestone: MilestoneModel, agg: Aggregate) -> dict[str, Any]:
        return {
            "milestone_id": milestone.id,
            "vault_id": milestone.vault_id,
            "status": agg.status,
            "approval_policy": milestone.approval_policy,
            "approved": agg.approved,
            "rejected": agg.rejected,
            "pending": agg.pending,
            "total": agg.total,
            "reason": agg.reason,
        }
