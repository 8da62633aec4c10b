"""PostgreSQL-backed job store for notification delivery.

This service is the single serialization point between worker processes.
Every cross-process mutation of a notification job goes through one of its
atomic operations; nothing else writes job fields directly.

Key features:
- Atomic batch claiming with FOR UPDATE SKIP LOCKED (no duplicate claims)
- Idempotent enqueue keyed by the producer's idempotency key
- Outcome transitions guarded by the current lease (status = claimed)
- Stale-lock reclamation for jobs abandoned by crashed workers

Usage:
    from taskmail.services.job_store import JobStoreService

    async with session_factory() as session:
        store = JobStoreService(session)
        jobs = await store.claim_batch(25, "worker-1")
        await session.commit()

Each method flushes or executes within the caller's transaction; the caller
owns commit/rollback.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError

from taskmail.db.models.base import NotificationJobStatus
from taskmail.db.models.jobs import NotificationJob

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class JobStoreError(Exception):
    """Base exception for job store operations (store unavailable, bad state)."""

    pass


class JobNotFoundError(JobStoreError):
    """Raised when a job cannot be found."""

    pass


class JobLeaseLostError(JobStoreError):
    """Raised when an outcome is recorded for a job that is no longer claimed by us.

    The job was reclaimed (and possibly claimed by another worker) or is
    already terminal. The outcome is discarded.
    """

    pass


class JobStoreContractError(JobStoreError):
    """Raised when a claim returns the same job twice.

    This can only happen through a store bug; the claimed batch must not be
    processed.
    """

    pass


class JobStoreService:
    """Durable notification job table with claim/release semantics.

    Attributes:
        session: SQLAlchemy async session for database operations.
        default_max_attempts: max_attempts for jobs enqueued without one.
    """

    def __init__(
        self,
        session: AsyncSession,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        """Initialize the job store.

        Args:
            session: SQLAlchemy async session for database operations.
            default_max_attempts: Default maximum delivery attempts.
        """
        self.session = session
        self.default_max_attempts = default_max_attempts

    async def enqueue(
        self,
        destination: str,
        subject: str,
        html_body: str,
        *,
        idempotency_key: str,
        text_body: str | None = None,
        template: str = "generic",
        max_attempts: int | None = None,
    ) -> NotificationJob:
        """Insert a new QUEUED job, due immediately.

        Safe to call concurrently from many producers. If a job with the same
        idempotency key already exists, that job is returned unchanged and no
        new row is written.

        Args:
            destination: Recipient address.
            subject: Message subject line.
            html_body: Rendered HTML body.
            idempotency_key: Producer-supplied deduplication key.
            text_body: Optional plain-text body.
            template: Label of the template that produced the body.
            max_attempts: Maximum delivery attempts. Defaults to default_max_attempts.

        Returns:
            The new (or pre-existing) job.

        Raises:
            ValueError: If max_attempts is less than 1 or the key is empty.
            JobStoreError: If the insert fails.
        """
        attempts_limit = max_attempts if max_attempts is not None else self.default_max_attempts
        if attempts_limit < 1:
            msg = f"max_attempts must be at least 1, got {attempts_limit}"
            raise ValueError(msg)
        if not idempotency_key:
            msg = "idempotency_key is required"
            raise ValueError(msg)

        now = datetime.now(UTC)
        stmt = (
            pg_insert(NotificationJob)
            .values(
                destination=destination,
                subject=subject,
                html_body=html_body,
                text_body=text_body,
                template=template,
                idempotency_key=idempotency_key,
                status=NotificationJobStatus.QUEUED,
                attempts=0,
                max_attempts=attempts_limit,
                next_attempt_at=now,
            )
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(NotificationJob)
        )

        try:
            result = await self.session.execute(stmt)
            job = result.scalar_one_or_none()

            if job is None:
                existing = await self._get_by_idempotency_key(idempotency_key)
                if existing is None:
                    # Conflicting row vanished between insert and lookup
                    msg = f"Job with idempotency_key={idempotency_key} could not be read back"
                    raise JobStoreError(msg)
                logger.info(
                    "Duplicate enqueue ignored: job_id=%s, idempotency_key=%s, status=%s",
                    existing.job_id,
                    idempotency_key,
                    existing.status.value,
                )
                return existing

            logger.info(
                "Job enqueued: job_id=%s, template=%s, max_attempts=%d",
                job.job_id,
                template,
                attempts_limit,
            )
            return job

        except SQLAlchemyError as e:
            logger.error("Failed to enqueue job: %s", str(e))
            raise JobStoreError(f"Failed to enqueue job: {e}") from e

    async def claim_batch(self, limit: int, worker_id: str) -> list[NotificationJob]:
        """Atomically claim up to ``limit`` due jobs for ``worker_id``.

        A single UPDATE ... RETURNING statement selects QUEUED jobs whose
        next_attempt_at has passed (oldest first), skipping rows locked by
        concurrent claimers, and marks them CLAIMED. No two concurrent callers
        can receive the same job.

        Args:
            limit: Maximum number of jobs to claim.
            worker_id: Lease holder identity.

        Returns:
            Claimed jobs ordered by next_attempt_at (may be empty).

        Raises:
            ValueError: If limit is less than 1.
            JobStoreContractError: If the claim returned a job twice.
            JobStoreError: If the claim fails. Nothing should be assumed claimed.
        """
        if limit < 1:
            msg = f"limit must be at least 1, got {limit}"
            raise ValueError(msg)

        now = datetime.now(UTC)

        picked = (
            select(NotificationJob.job_id)
            .where(
                NotificationJob.status == NotificationJobStatus.QUEUED,
                NotificationJob.next_attempt_at <= now,
            )
            .order_by(NotificationJob.next_attempt_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .cte("picked")
        )
        stmt = (
            update(NotificationJob)
            .where(NotificationJob.job_id.in_(select(picked.c.job_id)))
            .values(
                status=NotificationJobStatus.CLAIMED,
                claimed_at=now,
                claimed_by=worker_id,
            )
            .returning(NotificationJob)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            jobs = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to claim jobs: %s", str(e))
            raise JobStoreError(f"Failed to claim jobs: {e}") from e

        job_ids = [job.job_id for job in jobs]
        if len(set(job_ids)) != len(job_ids):
            logger.critical(
                "Claim returned duplicate job ids: worker_id=%s, job_ids=%s",
                worker_id,
                job_ids,
            )
            msg = f"Claim returned duplicate job ids for worker {worker_id}"
            raise JobStoreContractError(msg)

        if jobs:
            logger.info(
                "Jobs claimed: worker_id=%s, count=%d, limit=%d",
                worker_id,
                len(jobs),
                limit,
            )

        return sorted(jobs, key=lambda job: job.next_attempt_at)

    async def mark_sent(
        self,
        job_id: uuid.UUID,
        provider_message_id: str | None,
        *,
        attempts: int | None = None,
        claimed_by: str | None = None,
    ) -> None:
        """Transition a claimed job to SENT.

        Args:
            job_id: UUID of the job.
            provider_message_id: Message id returned by the provider, if any.
            attempts: Attempt number that succeeded (recorded when given).
            claimed_by: When given, only the holder of this lease may complete it.

        Raises:
            JobLeaseLostError: If the job is not claimed (by claimed_by).
            JobStoreError: If the update fails.
        """
        values: dict[str, Any] = {
            "status": NotificationJobStatus.SENT,
            "provider_message_id": provider_message_id,
            "last_error": None,
            "sent_at": datetime.now(UTC),
            "claimed_at": None,
            "claimed_by": None,
        }
        if attempts is not None:
            _check_attempts(attempts)
            values["attempts"] = attempts

        await self._transition(job_id, values, claimed_by, "mark_sent")

        logger.info(
            "Job sent: job_id=%s, provider_message_id=%s",
            job_id,
            provider_message_id,
        )

    async def mark_failed_permanent(
        self,
        job_id: uuid.UUID,
        attempts: int,
        error: str,
        *,
        claimed_by: str | None = None,
    ) -> None:
        """Transition a claimed job to FAILED (terminal).

        Args:
            job_id: UUID of the job.
            attempts: Total attempts made, including the one that just failed.
            error: Failure reason kept in last_error for operators.
            claimed_by: When given, only the holder of this lease may fail it.

        Raises:
            ValueError: If attempts is less than 1.
            JobLeaseLostError: If the job is not claimed (by claimed_by).
            JobStoreError: If the update fails.
        """
        _check_attempts(attempts)
        values = {
            "status": NotificationJobStatus.FAILED,
            "attempts": attempts,
            "last_error": error,
            "failed_at": datetime.now(UTC),
            "claimed_at": None,
            "claimed_by": None,
        }
        await self._transition(job_id, values, claimed_by, "mark_failed_permanent")

        logger.error(
            "Job failed permanently: job_id=%s, attempts=%d, error=%s",
            job_id,
            attempts,
            error,
        )

    async def mark_retry(
        self,
        job_id: uuid.UUID,
        attempts: int,
        next_attempt_at: datetime,
        error: str,
        *,
        claimed_by: str | None = None,
    ) -> None:
        """Return a claimed job to QUEUED, eligible again at next_attempt_at.

        next_attempt_at never moves backwards: the stored value is the
        greater of the current and the requested time.

        Args:
            job_id: UUID of the job.
            attempts: Total attempts made, including the one that just failed.
            next_attempt_at: Earliest time the job may be claimed again.
            error: Failure reason kept in last_error.
            claimed_by: When given, only the holder of this lease may requeue it.

        Raises:
            ValueError: If attempts is less than 1.
            JobLeaseLostError: If the job is not claimed (by claimed_by).
            JobStoreError: If the update fails.
        """
        _check_attempts(attempts)
        values = {
            "status": NotificationJobStatus.QUEUED,
            "attempts": attempts,
            "next_attempt_at": func.greatest(NotificationJob.next_attempt_at, next_attempt_at),
            "last_error": error,
            "claimed_at": None,
            "claimed_by": None,
        }
        await self._transition(job_id, values, claimed_by, "mark_retry")

        logger.warning(
            "Job scheduled for retry: job_id=%s, attempts=%d, next_attempt_at=%s, error=%s",
            job_id,
            attempts,
            next_attempt_at.isoformat(),
            error,
        )

    async def reclaim_stale(self, older_than: datetime) -> int:
        """Return abandoned claims to the claimable pool.

        Every CLAIMED job with claimed_at before ``older_than`` goes back to
        QUEUED with its lock fields cleared. attempts and next_attempt_at are
        left untouched; terminal jobs are never affected.

        Args:
            older_than: Lease start cut-off (now - stale lock timeout).

        Returns:
            Number of jobs reclaimed.

        Raises:
            JobStoreError: If the update fails.
        """
        stmt = (
            update(NotificationJob)
            .where(
                NotificationJob.status == NotificationJobStatus.CLAIMED,
                NotificationJob.claimed_at.is_not(None),
                NotificationJob.claimed_at < older_than,
            )
            .values(
                status=NotificationJobStatus.QUEUED,
                claimed_at=None,
                claimed_by=None,
            )
            .returning(NotificationJob.job_id)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            stale_job_ids = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to reclaim stale jobs: %s", str(e))
            raise JobStoreError(f"Failed to reclaim stale jobs: {e}") from e

        if stale_job_ids:
            logger.warning(
                "Re-queued %d stale jobs claimed before %s: %s",
                len(stale_job_ids),
                older_than.isoformat(),
                stale_job_ids,
            )

        return len(stale_job_ids)

    async def get_job(self, job_id: uuid.UUID) -> NotificationJob | None:
        """Retrieve a job by ID.

        Args:
            job_id: UUID of the job to retrieve.

        Returns:
            The job if found, None otherwise.
        """
        stmt = select(NotificationJob).where(NotificationJob.job_id == job_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_by_status(self) -> dict[NotificationJobStatus, int]:
        """Count jobs per status (statuses with no jobs report 0)."""
        stmt = select(NotificationJob.status, func.count()).group_by(NotificationJob.status)
        result = await self.session.execute(stmt)
        counts = dict.fromkeys(NotificationJobStatus, 0)
        for status, count in result.all():
            counts[status] = count
        return counts

    async def get_failed_jobs(self, limit: int = 100) -> list[NotificationJob]:
        """Retrieve permanently failed jobs, most recent first.

        Args:
            limit: Maximum number of jobs to return.

        Returns:
            List of FAILED jobs.
        """
        stmt = (
            select(NotificationJob)
            .where(NotificationJob.status == NotificationJobStatus.FAILED)
            .order_by(NotificationJob.failed_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def requeue_failed(self, job_id: uuid.UUID) -> None:
        """Manually requeue a FAILED job for immediate delivery.

        This is the operator escape hatch; it resets attempts to 0.

        Args:
            job_id: UUID of the failed job.

        Raises:
            JobNotFoundError: If the job does not exist.
            JobStoreError: If the job is not FAILED or the update fails.
        """
        stmt = (
            update(NotificationJob)
            .where(
                NotificationJob.job_id == job_id,
                NotificationJob.status == NotificationJobStatus.FAILED,
            )
            .values(
                status=NotificationJobStatus.QUEUED,
                attempts=0,
                next_attempt_at=datetime.now(UTC),
                last_error=None,
                failed_at=None,
            )
            .returning(NotificationJob.job_id)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            requeued = result.scalar_one_or_none()
            if requeued is None:
                job = await self.get_job(job_id)
                if job is None:
                    raise JobNotFoundError(f"Job not found: {job_id}")
                raise JobStoreError(
                    f"Can only requeue FAILED jobs, current status: {job.status.value}"
                )
        except SQLAlchemyError as e:
            logger.error("Failed to requeue job %s: %s", job_id, str(e))
            raise JobStoreError(f"Failed to requeue job: {e}") from e

        logger.info("Failed job requeued by operator: job_id=%s", job_id)

    async def _transition(
        self,
        job_id: uuid.UUID,
        values: dict[str, Any],
        claimed_by: str | None,
        operation: str,
    ) -> None:
        """Apply an outcome transition to a job that is currently claimed."""
        conditions = [
            NotificationJob.job_id == job_id,
            NotificationJob.status == NotificationJobStatus.CLAIMED,
        ]
        if claimed_by is not None:
            conditions.append(NotificationJob.claimed_by == claimed_by)

        stmt = (
            update(NotificationJob)
            .where(*conditions)
            .values(**values)
            .returning(NotificationJob.job_id)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await self.session.execute(stmt)
            updated = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to %s for job %s: %s", operation, job_id, str(e))
            raise JobStoreError(f"Failed to {operation}: {e}") from e

        if updated is None:
            msg = f"{operation}: job {job_id} is not claimed"
            if claimed_by is not None:
                msg += f" by {claimed_by}"
            raise JobLeaseLostError(msg)

    async def _get_by_idempotency_key(self, idempotency_key: str) -> NotificationJob | None:
        stmt = select(NotificationJob).where(NotificationJob.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


def _check_attempts(attempts: int) -> None:
    if attempts < 1:
        msg = f"attempts must be at least 1, got {attempts}"
        raise ValueError(msg)
