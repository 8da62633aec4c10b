"""Create the notification job table.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates notification_jobs and the notification_job_status enum, with the
indexes used by the claim query and the stale-lock sweep.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: Create the notification job table."""
    notification_job_status = postgresql.ENUM(
        "queued",
        "claimed",
        "sent",
        "failed",
        name="notification_job_status",
        create_type=False,
    )
    notification_job_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "notification_jobs",
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("destination", sa.String(320), nullable=False),
        sa.Column("subject", sa.String(998), nullable=False),
        sa.Column("html_body", sa.Text(), nullable=False),
        sa.Column("text_body", sa.Text(), nullable=True),
        sa.Column("template", sa.String(100), nullable=False, server_default="generic"),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column(
            "status",
            notification_job_status,
            nullable=False,
            server_default=sa.text("'queued'"),
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column(
            "next_attempt_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(255), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_notification_jobs")),
        sa.UniqueConstraint(
            "idempotency_key", name=op.f("uq_notification_jobs_idempotency_key")
        ),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts",
            name=op.f("ck_notification_jobs_attempts_within_max"),
        ),
        sa.CheckConstraint(
            "max_attempts >= 1",
            name=op.f("ck_notification_jobs_max_attempts_positive"),
        ),
        sa.CheckConstraint(
            "(status = 'claimed') = (claimed_at IS NOT NULL AND claimed_by IS NOT NULL)",
            name=op.f("ck_notification_jobs_lease_fields_match_status"),
        ),
    )
    op.create_index(
        "ix_notification_jobs_status_next_attempt_at",
        "notification_jobs",
        ["status", "next_attempt_at"],
        unique=False,
    )
    op.create_index(
        "ix_notification_jobs_status_claimed_at",
        "notification_jobs",
        ["status", "claimed_at"],
        unique=False,
    )


def downgrade() -> None:
    """Revert migration: Create the notification job table."""
    op.drop_index("ix_notification_jobs_status_claimed_at", table_name="notification_jobs")
    op.drop_index("ix_notification_jobs_status_next_attempt_at", table_name="notification_jobs")
    op.drop_table("notification_jobs")

    op.execute("DROP TYPE IF EXISTS notification_job_status")
