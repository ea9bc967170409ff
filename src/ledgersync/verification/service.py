"""Submission service — idempotent verifier decisions with encrypted evidence."""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.common.config import LedgerSyncSettings
from ledgersync.common.exceptions import (
    DecisionAlreadyRecordedError,
    IdempotencyConflictError,
    InvalidSubmissionError,
    MilestoneNotFoundError,
    MissingIdempotencyKeyError,
    VerifierNotAssignedError,
)
from ledgersync.common.models import utcnow
from ledgersync.milestones.service import MilestoneService
from ledgersync.verification.evidence import decrypt_evidence, encrypt_evidence
from ledgersync.verification.models import MilestoneVerifierModel, ValidationSubmissionModel
from ledgersync.verification.schemas import ValidationSubmissionCreate

logger = logging.getLogger(__name__)


def compute_fingerprint(payload: Any, verifier_id: str) -> str:
    """SHA-256 over the canonical JSON of the request body and the caller."""
    canonical = json.dumps(
        {"payload": payload, "verifier_id": verifier_id},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    location = ".".join(str(part) for part in err.get("loc", ()))
    return f"{location}: {err.get('msg', 'invalid value')}" if location else err.get("msg", "")


@dataclass
class SubmissionResult:
    record: ValidationSubmissionModel
    replayed: bool
    milestone_status: Optional[str] = None


class SubmissionService:
    """Records verifier decisions exactly once per idempotency key."""

    def __init__(
        self,
        settings: LedgerSyncSettings,
        milestone_service: MilestoneService,
        webhook_service=None,
    ):
        self.settings = settings
        self.milestones = milestone_service
        self.webhook_service = webhook_service

    async def get_by_key(
        self, session: AsyncSession, idempotency_key: str,
    ) -> Optional[ValidationSubmissionModel]:
        result = await session.execute(
            select(ValidationSubmissionModel).where(
                ValidationSubmissionModel.idempotency_key == idempotency_key
            )
        )
        return result.scalar_one_or_none()

    async def _replay(
        self,
        session: AsyncSession,
        existing: ValidationSubmissionModel,
        digest: str,
    ) -> SubmissionResult:
        if existing.payload_digest != digest:
            raise IdempotencyConflictError()
        milestone = await self.milestones.get_milestone(session, existing.milestone_id)
        logger.info("Replayed submission %s", existing.id,
                    extra={"milestone_id": existing.milestone_id})
        return SubmissionResult(
            record=existing,
            replayed=True,
            milestone_status=milestone.status if milestone else None,
        )

    async def submit(
        self,
        session: AsyncSession,
        idempotency_key: str | None,
        payload: Any,
        verifier_id: str,
    ) -> SubmissionResult:
        """
        Record a verifier's decision.

        The same key with the same body and caller replays the stored
        record without side effects. The same key with anything else
        raises IdempotencyConflictError. A new key records the decision
        and immediately re-aggregates the milestone.
        """
        key = (idempotency_key or "").strip()
        if not key:
            raise MissingIdempotencyKeyError()

        digest = compute_fingerprint(payload, verifier_id)
        existing = await self.get_by_key(session, key)
        if existing is not None:
            return await self._replay(session, existing, digest)

        if not isinstance(payload, dict):
            raise InvalidSubmissionError("Request body must be a JSON object")
        try:
            data = ValidationSubmissionCreate.model_validate(payload)
        except ValidationError as e:
            raise InvalidSubmissionError(_first_error(e)) from None

        milestone = await self.milestones.get_milestone(session, data.milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(f"Milestone not found: {data.milestone_id}")
        if milestone.vault_id != data.vault_id:
            raise InvalidSubmissionError("Milestone does not belong to the given vault")

        assignment = await self.milestones.get_assignment(session, milestone.id, verifier_id)
        verifier = await self.milestones.get_verifier(session, verifier_id)
        if assignment is None or verifier is None or not verifier.active:
            raise VerifierNotAssignedError()
        if assignment.decision != "pending":
            raise DecisionAlreadyRecordedError()

        sealed = encrypt_evidence(
            data.evidence.model_dump(), self.settings.evidence_encryption_key,
        )
        record = ValidationSubmissionModel(
            idempotency_key=key,
            payload_digest=digest,
            vault_id=data.vault_id,
            milestone_id=data.milestone_id,
            verifier_id=verifier_id,
            verdict=data.verdict,
            reason=data.reason,
            evidence_mime_type=sealed.mime_type,
            evidence_size_bytes=sealed.size_bytes,
            evidence_encrypted=True,
            evidence_algorithm=sealed.algorithm,
            evidence_key_id=sealed.key_id,
            evidence_iv=sealed.iv,
            evidence_auth_tag=sealed.auth_tag,
            evidence_ciphertext=sealed.ciphertext,
        )
        session.add(record)
        await session.flush()

        # Conditional write: a concurrent decision that committed first leaves no pending row
        decided = await session.execute(
            update(MilestoneVerifierModel)
            .where(
                MilestoneVerifierModel.id == assignment.id,
                MilestoneVerifierModel.decision == "pending",
            )
            .values(decision=data.verdict, decided_at=utcnow())
        )
        if decided.rowcount == 0:
            raise DecisionAlreadyRecordedError()

        agg = await self.milestones.evaluate(session, milestone.id)
        logger.info(
            "Recorded %s decision from %s on milestone %s (now %s)",
            data.verdict, verifier_id, milestone.id, agg.status,
            extra={"milestone_id": milestone.id},
        )

        if self.webhook_service:
            await self.webhook_service.dispatch(
                session, "validation.recorded",
                {
                    "submission_id": record.id,
                    "vault_id": record.vault_id,
                    "milestone_id": record.milestone_id,
                    "verifier_id": verifier_id,
                    "verdict": record.verdict,
                    "milestone_status": agg.status,
                },
            )

        return SubmissionResult(record=record, replayed=False, milestone_status=agg.status)

    async def submit_once(
        self,
        db,
        idempotency_key: str | None,
        payload: Any,
        verifier_id: str,
    ) -> SubmissionResult:
        """
        Run submit() in its own transaction.

        Two concurrent requests can both pass the lookups; the unique
        indexes on the idempotency key and on (milestone, verifier) let only
        one insert commit. The loser re-reads in a fresh session and
        resolves to a replay, an idempotency conflict, or ALREADY_DECIDED.
        """
        try:
            async with db.get_session() as session:
                return await self.submit(session, idempotency_key, payload, verifier_id)
        except IntegrityError:
            key = (idempotency_key or "").strip()
            milestone_id = payload.get("milestone_id") if isinstance(payload, dict) else None
            async with db.get_session() as session:
                existing = await self.get_by_key(session, key)
                if existing is not None:
                    return await self._replay(
                        session, existing, compute_fingerprint(payload, verifier_id),
                    )
                if milestone_id is not None and await self._has_decided(
                    session, milestone_id, verifier_id,
                ):
                    raise DecisionAlreadyRecordedError() from None
            raise

    async def _has_decided(
        self, session: AsyncSession, milestone_id: str, verifier_id: str,
    ) -> bool:
        result = await session.execute(
            select(ValidationSubmissionModel.id).where(
                ValidationSubmissionModel.milestone_id == milestone_id,
                ValidationSubmissionModel.verifier_id == verifier_id,
            )
        )
        return result.first() is not None

    # ── Read ──

    async def get_submission(
        self, session: AsyncSession, submission_id: str,
    ) -> Optional[ValidationSubmissionModel]:
        result = await session.execute(
            select(ValidationSubmissionModel).where(
                ValidationSubmissionModel.id == submission_id
            )
        )
        return result.scalar_one_or_none()

    async def list_submissions(
        self,
        session: AsyncSession,
        milestone_id: str | None = None,
        verifier_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[ValidationSubmissionModel], int]:
        """List submissions with count. Returns (items, total)."""
        filters = []
        if milestone_id is not None:
            filters.append(ValidationSubmissionModel.milestone_id == milestone_id)
        if verifier_id is not None:
            filters.append(ValidationSubmissionModel.verifier_id == verifier_id)

        count_q = select(func.count(ValidationSubmissionModel.id))
        if filters:
            count_q = count_q.where(*filters)
        total = (await session.execute(count_q)).scalar() or 0

        query = select(ValidationSubmissionModel)
        if filters:
            query = query.where(*filters)
        query = (
            query.order_by(ValidationSubmissionModel.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await session.execute(query)
        return list(result.scalars().all()), total

    def open_evidence(self, record: ValidationSubmissionModel) -> dict[str, Any]:
        """Decrypt the evidence stored on a submission."""
        return decrypt_evidence(
            record.evidence_iv,
            record.evidence_auth_tag,
            record.evidence_ciphertext,
            self.settings.evidence_encryption_key,
        )
