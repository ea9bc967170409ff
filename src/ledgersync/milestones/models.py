"""SQLAlchemy models for vaults, milestones, and ledger-reported validations."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.common.models import Base, TimestampMixin, generate_uuid

MILESTONE_TERMINAL_STATUSES = frozenset({"approved", "rejected", "expired"})


class VaultModel(Base, TimestampMixin):
    __tablename__ = "vaults"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    creator: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[str] = mapped_column(String(64), nullable=False)
    start_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    success_destination: Mapped[str] = mapped_column(String(255), nullable=False)
    failure_destination: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)


class MilestoneModel(Base, TimestampMixin):
    __tablename__ = "milestones"

    id: Mapped[str] = mapped_column(String(128), primary_key=True, default=generate_uuid)
    vault_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    target_amount: Mapped[str] = mapped_column(String(64), nullable=False, default="0")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    approval_policy: Mapped[str] = mapped_column(String(20), nullable=False, default="all")
    deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in MILESTONE_TERMINAL_STATUSES


class LedgerValidationModel(Base, TimestampMixin):
    __tablename__ = "ledger_validations"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    milestone_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    validator_address: Mapped[str] = mapped_column(String(255), nullable=False)
    validation_result: Mapped[str] = mapped_column(String(20), nullable=False)
    evidence_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    validated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
