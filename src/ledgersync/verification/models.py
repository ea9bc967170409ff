"""SQLAlchemy models for verifiers, assignments, and idempotent submissions."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.common.models import Base, TimestampMixin, generate_uuid


class VerifierModel(Base, TimestampMixin):
    __tablename__ = "verifiers"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class MilestoneVerifierModel(Base, TimestampMixin):
    __tablename__ = "milestone_verifiers"
    __table_args__ = (
        UniqueConstraint("milestone_id", "verifier_id", name="uq_milestone_verifier"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    milestone_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("milestones.id", ondelete="CASCADE"), nullable=False, index=True
    )
    verifier_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("verifiers.id"), nullable=False, index=True
    )
    decision: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    decided_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ValidationSubmissionModel(Base, TimestampMixin):
    __tablename__ = "validation_submissions"
    __table_args__ = (
        # One decision per verifier per milestone
        UniqueConstraint("milestone_id", "verifier_id", name="uq_submission_verifier"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    idempotency_key: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    payload_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    vault_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    milestone_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    verifier_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    verdict: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Evidence descriptor; the evidence body itself is only kept encrypted
    evidence_mime_type: Mapped[str] = mapped_column(String(255), nullable=False)
    evidence_size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    evidence_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    evidence_algorithm: Mapped[str] = mapped_column(String(32), nullable=False)
    evidence_key_id: Mapped[str] = mapped_column(String(32), nullable=False)
    evidence_iv: Mapped[str] = mapped_column(String(32), nullable=False)
    evidence_auth_tag: Mapped[str] = mapped_column(String(32), nullable=False)
    evidence_ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
