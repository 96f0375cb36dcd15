"""
Outbox job model: the durable table every worker coordinates through.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, Index, SmallInteger, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from salesops.infra.database import Base, UTCDateTime, utc_now

DEFAULT_MAX_ATTEMPTS = 5


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(Base):
    """
    Outbox job row.

    Created inside the business transaction that needs the side effect,
    then mutated only through conditional updates:
    - claim sets the lease (locked_until/locked_by) and counts the attempt
    - complete/fail release the lease and record the outcome
    - completed and failed rows are kept for audit
    """

    __tablename__ = "outbox"

    job_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Handler key"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=False,
        default=dict,
        comment="Handler-specific parameters",
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed",
    )
    attempts: Mapped[int] = mapped_column(
        SmallInteger, nullable=False, default=0, comment="Executions started"
    )
    max_attempts: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=DEFAULT_MAX_ATTEMPTS,
        comment="Executions allowed before dead-lettering",
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now
    )
    scheduled_for: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        comment="Earliest time the job may be claimed",
    )

    # Lease
    locked_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Lease expiry"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the lease"
    )

    # Outcome
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Most recent failure, truncated"
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="outbox_status_check",
        ),
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="outbox_attempts_check",
        ),
        Index("ix_outbox_status_scheduled_for", "status", "scheduled_for"),
        Index("ix_outbox_job_type_status", "job_type", "status"),
        Index("ix_outbox_created_at", "created_at"),
        Index("ix_outbox_locked_until", "locked_until"),
    )

    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def can_retry(self) -> bool:
        """Check if an operator retry would give the job another execution."""
        return self.status == JobStatus.FAILED.value and not self.attempts_exhausted()
