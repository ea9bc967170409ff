"""
Apply handlers for parsed ledger events.

A handler is ``async handler(session, event) -> None``. It runs inside the
same session as the idempotency check and record, so anything it writes
commits or rolls back together with the processed-event marker. Raising
means the apply failed and will be retried.

Handlers should tolerate being re-run against state they already wrote:
the guard prevents double application of an event id, but a manual
dead-letter reprocess can replay a partially visible unit.
"""

import logging
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.common.exceptions import MilestoneNotFoundError, VaultNotFoundError
from ledgersync.ingestion.parser import (
    EVENT_TYPES,
    VAULT_STATUS_EVENTS,
    MilestoneCreatedPayload,
    MilestoneValidatedPayload,
    ParsedEvent,
    VaultCreatedPayload,
    VaultStatusPayload,
)
from ledgersync.milestones.models import LedgerValidationModel, VaultModel
from ledgersync.milestones.service import MilestoneService

logger = logging.getLogger(__name__)

EventHandler = Callable[[AsyncSession, ParsedEvent], Awaitable[None]]


class HandlerRegistry:
    """Maps event types to their apply handler."""

    def __init__(self):
        self._handlers: dict[str, EventHandler] = {}

    def register(self, event_type: str, handler: EventHandler) -> None:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._handlers[event_type] = handler

    def get(self, event_type: str) -> EventHandler | None:
        return self._handlers.get(event_type)

    def __contains__(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def apply(self, session: AsyncSession, event: ParsedEvent) -> None:
        handler = self.get(event.event_type)
        if handler is None:
            raise LookupError(f"No handler registered for event type: {event.event_type}")
        await handler(session, event)


class LedgerHandlers:
    """Default handlers writing vaults, milestones, and ledger validations."""

    def __init__(self, milestones: MilestoneService):
        self.milestones = milestones

    async def vault_created(self, session: AsyncSession, event: ParsedEvent) -> None:
        payload: VaultCreatedPayload = event.payload
        vault = await self.milestones.get_vault(session, payload.vault_id)
        if vault is not None:
            logger.debug("Vault %s already exists", payload.vault_id,
                         extra={"event_id": event.event_id})
            return
        session.add(VaultModel(
            id=payload.vault_id,
            creator=payload.creator,
            amount=payload.amount,
            start_timestamp=payload.start_timestamp,
            end_timestamp=payload.end_timestamp,
            success_destination=payload.success_destination,
            failure_destination=payload.failure_destination,
            status="active",
        ))
        await session.flush()

    async def vault_status_changed(self, session: AsyncSession, event: ParsedEvent) -> None:
        payload: VaultStatusPayload = event.payload
        vault = await self.milestones.get_vault(session, payload.vault_id)
        if vault is None:
            raise VaultNotFoundError(f"Vault not found: {payload.vault_id}")
        vault.status = payload.status
        await session.flush()

    async def milestone_created(self, session: AsyncSession, event: ParsedEvent) -> None:
        payload: MilestoneCreatedPayload = event.payload
        if await self.milestones.get_milestone(session, payload.milestone_id) is not None:
            return
        await self.milestones.create_milestone(
            session,
            vault_id=payload.vault_id,
            title=payload.title,
            deadline=payload.deadline,
            milestone_id=payload.milestone_id,
            description=payload.description,
            target_amount=payload.target_amount,
            approval_policy=payload.approval_policy,
            verifier_ids=payload.verifiers,
        )

    async def milestone_validated(self, session: AsyncSession, event: ParsedEvent) -> None:
        payload: MilestoneValidatedPayload = event.payload
        if await self.milestones.get_milestone(session, payload.milestone_id) is None:
            raise MilestoneNotFoundError(f"Milestone not found: {payload.milestone_id}")
        existing = await session.execute(
            select(LedgerValidationModel.id).where(
                LedgerValidationModel.id == payload.validation_id
            )
        )
        if existing.scalar_one_or_none() is not None:
            return
        session.add(LedgerValidationModel(
            id=payload.validation_id,
            milestone_id=payload.milestone_id,
            validator_address=payload.validator_address,
            validation_result=payload.validation_result,
            evidence_hash=payload.evidence_hash,
            validated_at=payload.validated_at,
        ))
        await session.flush()


def default_registry(milestones: MilestoneService) -> HandlerRegistry:
    handlers = LedgerHandlers(milestones)
    registry = HandlerRegistry()
    registry.register("vault_created", handlers.vault_created)
    for event_type in VAULT_STATUS_EVENTS:
        registry.register(event_type, handlers.vault_status_changed)
    registry.register("milestone_created", handlers.milestone_created)
    registry.register("milestone_validated", handlers.milestone_validated)
    return registry
