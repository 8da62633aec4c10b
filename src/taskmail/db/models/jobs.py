"""Notification job model for PostgreSQL-backed delivery.

This provides a durable, shared job table:
- SKIP LOCKED batch claiming for competing workers
- Retry bookkeeping (attempts, next_attempt_at, last_error)
- Lease fields (claimed_at, claimed_by) for stale-lock recovery
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import CheckConstraint, DateTime, Enum, Index, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from taskmail.db.models.base import (
    Base,
    NotificationJobStatus,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)


class NotificationJob(Base):
    """One durable unit of outbound notification work.

    The job is self-contained: it carries the rendered message and does not
    reference projects, tasks or users.
    """

    __tablename__ = "notification_jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ] = mapped_column(onupdate=func.now())

    # Payload
    destination: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(String(998), nullable=False)
    html_body: Mapped[str] = mapped_column(Text, nullable=False)
    text_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Template label, e.g. 'task_assigned' (informational only)
    template: Mapped[str] = mapped_column(String(100), nullable=False, default="generic")
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    status: Mapped[NotificationJobStatus] = mapped_column(
        Enum(
            NotificationJobStatus,
            name="notification_job_status",
            create_constraint=True,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=NotificationJobStatus.QUEUED,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=5, nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("now()"),
        nullable=False,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lease
    claimed_at: Mapped[OptionalTimestampTZ]
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Outcome
    provider_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[OptionalTimestampTZ]
    failed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="attempts_within_max"),
        CheckConstraint("max_attempts >= 1", name="max_attempts_positive"),
        CheckConstraint(
            "(status = 'claimed') = (claimed_at IS NOT NULL AND claimed_by IS NOT NULL)",
            name="lease_fields_match_status",
        ),
        # Claim query: queued jobs that are due, oldest first
        Index("ix_notification_jobs_status_next_attempt_at", "status", "next_attempt_at"),
        # Stale-lock scan
        Index("ix_notification_jobs_status_claimed_at", "status", "claimed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationJob {self.job_id} status={self.status.value if self.status else None} "
            f"attempts={self.attempts}/{self.max_attempts}>"
        )
