"""SQLAlchemy models for ledger cursors and the applied-event set."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgersync.common.models import Base, TimestampMixin, utcnow


class CursorStateModel(Base, TimestampMixin):
    __tablename__ = "listener_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_name: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    last_processed_position: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ProcessedEventModel(Base):
    __tablename__ = "processed_events"

    # "{transaction_hash}:{event_index}"; the primary key is the dedup constraint
    event_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    transaction_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_index: Mapped[int] = mapped_column(Integer, nullable=False)
    ledger_position: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    service_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
