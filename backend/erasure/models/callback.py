import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Index, Integer, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from erasure.db.base import Base


class CallbackKind(str, enum.Enum):
    execute_deletion = "execute_deletion"
    final_purge = "final_purge"


class CallbackStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    done = "done"
    cancelled = "cancelled"
    failed = "failed"


class DeletionCallback(Base):
    """Durable deferred callback; re-armed from account state after a restart if missing."""

    __tablename__ = "deletion_callbacks"
    __table_args__ = (Index("ix_deletion_callbacks_status_run_at", "status", "run_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # No foreign key: the account row is removed by the purge this callback drives.
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    deletion_request_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    kind: Mapped[CallbackKind] = mapped_column(Enum(CallbackKind), nullable=False)
    status: Mapped[CallbackStatus] = mapped_column(
        Enum(CallbackStatus), nullable=False, default=CallbackStatus.pending, index=True
    )
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
