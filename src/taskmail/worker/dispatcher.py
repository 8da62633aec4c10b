"""Bounded-concurrency delivery of a claimed batch.

The dispatcher owns no queue of its own: the worker claims a batch, and the
dispatcher runs at most ``concurrency`` handlers over it. Handlers pull jobs
from one shared iterator, so a slow send only holds up its own handler.

Per job:
1. Wait for a send slot from the rate gate
2. Hand the message to the delivery client
3. Record exactly one outcome (sent, retry, permanent failure), each in its
   own session and transaction

A failure in one job never aborts the batch. If the outcome cannot be
recorded (lease lost to the reclaimer, store unavailable), the job is left to
the stale-lock reclaimer.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from taskmail.services.classification import ErrorClass, describe_error
from taskmail.services.delivery import OutboundMessage, hash_address
from taskmail.services.job_store import JobLeaseLostError, JobStoreError, JobStoreService

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from taskmail.db.models.jobs import NotificationJob
    from taskmail.services.backoff import BackoffPolicy
    from taskmail.services.classification import ErrorClassifier
    from taskmail.services.delivery import DeliveryClient
    from taskmail.services.rate_gate import RateGate

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    """What happened to one claimed job."""

    SENT = "sent"
    RETRY_SCHEDULED = "retry_scheduled"
    PERMANENTLY_FAILED = "permanently_failed"
    LEASE_LOST = "lease_lost"


@dataclass
class BatchResult:
    """Outcome counts for one dispatched batch."""

    outcomes: Counter[JobOutcome] = field(default_factory=Counter)

    def record(self, outcome: JobOutcome) -> None:
        self.outcomes[outcome] += 1

    @property
    def total(self) -> int:
        return sum(self.outcomes.values())

    @property
    def sent(self) -> int:
        return self.outcomes[JobOutcome.SENT]

    @property
    def retried(self) -> int:
        return self.outcomes[JobOutcome.RETRY_SCHEDULED]

    @property
    def failed(self) -> int:
        return self.outcomes[JobOutcome.PERMANENTLY_FAILED]

    @property
    def lease_lost(self) -> int:
        return self.outcomes[JobOutcome.LEASE_LOST]


class Dispatcher:
    """Deliver claimed jobs with bounded concurrency.

    Args:
        session_factory: Factory for the per-outcome sessions.
        delivery_client: Client that transmits messages.
        rate_gate: Pacing shared by all handlers of this process.
        backoff: Retry delay policy.
        worker_id: Lease holder identity used to guard outcome writes.
        concurrency: Maximum jobs in flight at once.
        classifier: Failure classifier. Defaults to the client's own.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        delivery_client: DeliveryClient,
        rate_gate: RateGate,
        backoff: BackoffPolicy,
        worker_id: str,
        concurrency: int = 5,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        if concurrency < 1:
            msg = f"concurrency must be at least 1, got {concurrency}"
            raise ValueError(msg)

        self._session_factory = session_factory
        self.delivery_client = delivery_client
        self.rate_gate = rate_gate
        self.backoff = backoff
        self.worker_id = worker_id
        self.concurrency = concurrency
        self._classify = classifier or delivery_client.classify_error

    async def run_batch(self, jobs: Sequence[NotificationJob]) -> BatchResult:
        """Handle every job of a claimed batch; returns when all are done."""
        result = BatchResult()
        if not jobs:
            return result

        pending = iter(jobs)
        handlers = min(self.concurrency, len(jobs))
        drained = await asyncio.gather(
            *(self._drain(pending, result) for _ in range(handlers)),
            return_exceptions=True,
        )
        for error in drained:
            if isinstance(error, BaseException):
                logger.error(
                    "Batch handler stopped: worker_id=%s, error=%s",
                    self.worker_id,
                    describe_error(error),
                )

        logger.info(
            "Batch dispatched: worker_id=%s, jobs=%d, sent=%d, retried=%d, failed=%d, "
            "lease_lost=%d",
            self.worker_id,
            result.total,
            result.sent,
            result.retried,
            result.failed,
            result.lease_lost,
        )
        return result

    async def _drain(self, pending: Iterator[NotificationJob], result: BatchResult) -> None:
        # next() never awaits, so two handlers cannot take the same job
        for job in pending:
            try:
                outcome = await self.handle_job(job)
            except Exception:
                logger.exception(
                    "Unexpected error handling job, leaving it to stale reclaim: job_id=%s",
                    job.job_id,
                )
                outcome = JobOutcome.LEASE_LOST
            result.record(outcome)

    async def handle_job(self, job: NotificationJob) -> JobOutcome:
        """Attempt delivery of one claimed job and record the outcome.

        A job claimed with attempts already at max_attempts (only possible
        after manual edits, e.g. lowering max_attempts on a queued job) is
        failed without another send, so its attempts count is recorded as
        is rather than incremented.
        """
        if job.attempts >= job.max_attempts:
            # Exhausted before this claim; do not send again
            logger.warning(
                "Claimed job already exhausted: job_id=%s, attempts=%d, max_attempts=%d",
                job.job_id,
                job.attempts,
                job.max_attempts,
            )
            return await self._record_failure(
                job,
                job.attempts,
                job.last_error or "Maximum attempts exhausted",
            )

        attempt = job.attempts + 1
        message = OutboundMessage.from_job(job)

        await self.rate_gate.acquire()
        logger.debug(
            "Sending job: job_id=%s, attempt=%d/%d, recipient_hash=%s",
            job.job_id,
            attempt,
            job.max_attempts,
            hash_address(job.destination),
        )

        try:
            provider_message_id = await self.delivery_client.send(message)
        except Exception as e:
            return await self._handle_send_failure(job, attempt, e)

        return await self._record(
            job,
            JobOutcome.SENT,
            lambda store: store.mark_sent(
                job.job_id,
                provider_message_id,
                attempts=attempt,
                claimed_by=self.worker_id,
            ),
        )

    async def _handle_send_failure(
        self,
        job: NotificationJob,
        attempt: int,
        error: Exception,
    ) -> JobOutcome:
        try:
            error_class = self._classify(error)
            reason = describe_error(error)
        except Exception:
            logger.exception("Could not classify delivery failure: job_id=%s", job.job_id)
            error_class = ErrorClass.RETRYABLE
            reason = type(error).__name__

        if error_class is ErrorClass.PERMANENT:
            logger.warning(
                "Permanent delivery failure: job_id=%s, attempt=%d, error=%s",
                job.job_id,
                attempt,
                reason,
            )
            return await self._record_failure(job, attempt, reason)

        if attempt >= job.max_attempts:
            logger.warning(
                "Delivery attempts exhausted: job_id=%s, attempts=%d, error=%s",
                job.job_id,
                attempt,
                reason,
            )
            return await self._record_failure(job, attempt, reason)

        next_attempt_at = self.backoff.next_attempt_at(attempt, datetime.now(UTC))
        return await self._record(
            job,
            JobOutcome.RETRY_SCHEDULED,
            lambda store: store.mark_retry(
                job.job_id,
                attempt,
                next_attempt_at,
                reason,
                claimed_by=self.worker_id,
            ),
        )

    async def _record_failure(self, job: NotificationJob, attempts: int, reason: str) -> JobOutcome:
        return await self._record(
            job,
            JobOutcome.PERMANENTLY_FAILED,
            lambda store: store.mark_failed_permanent(
                job.job_id,
                attempts,
                reason,
                claimed_by=self.worker_id,
            ),
        )

    async def _record(
        self,
        job: NotificationJob,
        outcome: JobOutcome,
        write: Callable[[JobStoreService], Awaitable[None]],
    ) -> JobOutcome:
        """Run one outcome write in its own transaction.

        Returns ``outcome`` when committed, LEASE_LOST when the store refused
        or failed the write.
        """
        try:
            async with self._session_factory() as session:
                await write(JobStoreService(session))
                await session.commit()
        except JobLeaseLostError as e:
            logger.warning(
                "Lease lost, outcome discarded: job_id=%s, outcome=%s, reason=%s",
                job.job_id,
                outcome.value,
                e,
            )
            return JobOutcome.LEASE_LOST
        except (JobStoreError, SQLAlchemyError) as e:
            logger.error(
                "Could not record outcome, leaving job to stale reclaim: job_id=%s, outcome=%s, "
                "error=%s",
                job.job_id,
                outcome.value,
                e,
            )
            return JobOutcome.LEASE_LOST

        return outcome
