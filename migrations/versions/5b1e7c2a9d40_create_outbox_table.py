"""create outbox table

Revision ID: 5b1e7c2a9d40
Revises:
Create Date: 2026-10-18 09:12:31.204518

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "5b1e7c2a9d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "outbox",
        sa.Column("job_id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_type", sa.Text, nullable=False, comment="Handler key"),
        sa.Column(
            "payload",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
            comment="Handler-specific parameters",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Job status: pending|processing|completed|failed",
        ),
        sa.Column(
            "attempts",
            sa.SmallInteger,
            nullable=False,
            server_default="0",
            comment="Executions started",
        ),
        sa.Column(
            "max_attempts",
            sa.SmallInteger,
            nullable=False,
            server_default="5",
            comment="Executions allowed before dead-lettering",
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "scheduled_for",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time the job may be claimed",
        ),
        sa.Column(
            "locked_until",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Lease expiry",
        ),
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker holding the lease"
        ),
        sa.Column(
            "last_error",
            sa.Text,
            nullable=True,
            comment="Most recent failure, truncated",
        ),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="outbox_status_check",
        ),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name="outbox_attempts_check",
        ),
    )

    # Claim path: due pending rows and expired leases
    op.create_index(
        "ix_outbox_status_scheduled_for", "outbox", ["status", "scheduled_for"]
    )
    op.create_index("ix_outbox_locked_until", "outbox", ["locked_until"])

    # Admin listing
    op.create_index("ix_outbox_job_type_status", "outbox", ["job_type", "status"])
    op.create_index("ix_outbox_created_at", "outbox", ["created_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_outbox_created_at", table_name="outbox")
    op.drop_index("ix_outbox_job_type_status", table_name="outbox")
    op.drop_index("ix_outbox_locked_until", table_name="outbox")
    op.drop_index("ix_outbox_status_scheduled_for", table_name="outbox")
    op.drop_table("outbox")
