"""Integration tests for the PostgreSQL job store.

Tests verify the behaviour that only a real database can show:
1. Concurrent claimers never receive the same job
2. Jobs not yet due are never claimed
3. Stale claims are reclaimed without touching attempts
4. A retry never moves next_attempt_at backwards
5. Enqueue is idempotent per key
6. Outcome writes are refused once the lease is gone

Run with: TEST_DATABASE_URL=postgresql://... pytest tests/integration -m integration
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select, update

from taskmail.db.models import NotificationJob, NotificationJobStatus
from taskmail.services.job_store import JobLeaseLostError, JobStoreService


async def _enqueue(session_factory, count: int, prefix: str = "job") -> list:
    async with session_factory() as session:
        store = JobStoreService(session)
        jobs = [
            await store.enqueue(
                f"user{i}@example.com",
                f"Subject {i}",
                f"<p>{i}</p>",
                idempotency_key=f"{prefix}:{i}",
            )
            for i in range(count)
        ]
        await session.commit()
    return [job.job_id for job in jobs]


async def _get(session_factory, job_id) -> NotificationJob:
    async with session_factory() as session:
        return await session.get(NotificationJob, job_id)


@pytest.mark.asyncio
async def test_concurrent_claims_are_disjoint(session_factory):
    job_ids = await _enqueue(session_factory, 60)

    async def claim(worker_id: str) -> list:
        claimed = []
        while True:
            async with session_factory() as session:
                jobs = await JobStoreService(session).claim_batch(7, worker_id)
                await session.commit()
            if not jobs:
                return claimed
            claimed.extend(job.job_id for job in jobs)

    results = await asyncio.gather(*(claim(f"worker-{n}") for n in range(5)))

    all_claimed = [job_id for claimed in results for job_id in claimed]
    assert len(all_claimed) == len(set(all_claimed))
    assert set(all_claimed) == set(job_ids)


@pytest.mark.asyncio
async def test_claim_skips_jobs_not_yet_due(session_factory):
    job_ids = await _enqueue(session_factory, 2)
    async with session_factory() as session:
        await session.execute(
            update(NotificationJob)
            .where(NotificationJob.job_id == job_ids[0])
            .values(next_attempt_at=datetime.now(UTC) + timedelta(minutes=5))
        )
        await session.commit()

    async with session_factory() as session:
        jobs = await JobStoreService(session).claim_batch(10, "worker-1")
        await session.commit()

    assert [job.job_id for job in jobs] == [job_ids[1]]
    assert jobs[0].status == NotificationJobStatus.CLAIMED
    assert jobs[0].claimed_by == "worker-1"


@pytest.mark.asyncio
async def test_reclaim_stale_keeps_attempts(session_factory):
    (job_id,) = await _enqueue(session_factory, 1)
    async with session_factory() as session:
        await JobStoreService(session).claim_batch(1, "crashed-worker")
        await session.execute(
            update(NotificationJob)
            .where(NotificationJob.job_id == job_id)
            .values(attempts=2, claimed_at=datetime.now(UTC) - timedelta(minutes=10))
        )
        await session.commit()

    async with session_factory() as session:
        reclaimed = await JobStoreService(session).reclaim_stale(
            datetime.now(UTC) - timedelta(minutes=5)
        )
        await session.commit()

    job = await _get(session_factory, job_id)
    assert reclaimed == 1
    assert job.status == NotificationJobStatus.QUEUED
    assert job.claimed_by is None
    assert job.claimed_at is None
    assert job.attempts == 2


@pytest.mark.asyncio
async def test_retry_never_moves_next_attempt_backwards(session_factory):
    (job_id,) = await _enqueue(session_factory, 1)
    later = datetime.now(UTC) + timedelta(hours=1)
    async with session_factory() as session:
        await JobStoreService(session).claim_batch(1, "worker-1")
        await session.execute(
            update(NotificationJob)
            .where(NotificationJob.job_id == job_id)
            .values(next_attempt_at=later)
        )
        await session.commit()

    async with session_factory() as session:
        await JobStoreService(session).mark_retry(
            job_id,
            1,
            datetime.now(UTC) + timedelta(seconds=30),
            "Service unavailable (503)",
            claimed_by="worker-1",
        )
        await session.commit()

    job = await _get(session_factory, job_id)
    assert job.status == NotificationJobStatus.QUEUED
    assert job.attempts == 1
    assert job.next_attempt_at == later


@pytest.mark.asyncio
async def test_enqueue_is_idempotent(session_factory):
    first = await _enqueue(session_factory, 1, prefix="mention")
    second = await _enqueue(session_factory, 1, prefix="mention")

    async with session_factory() as session:
        rows = (await session.execute(select(NotificationJob.job_id))).scalars().all()

    assert first == second
    assert rows == first


@pytest.mark.asyncio
async def test_outcome_refused_after_lease_lost(session_factory):
    (job_id,) = await _enqueue(session_factory, 1)
    async with session_factory() as session:
        await JobStoreService(session).claim_batch(1, "slow-worker")
        await session.commit()

    # Lease expires and another worker claims the job
    async with session_factory() as session:
        store = JobStoreService(session)
        await store.reclaim_stale(datetime.now(UTC) + timedelta(seconds=1))
        await store.claim_batch(1, "fast-worker")
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(JobLeaseLostError):
            await JobStoreService(session).mark_sent(
                job_id, "prov-late", attempts=1, claimed_by="slow-worker"
            )
        await session.rollback()

    job = await _get(session_factory, job_id)
    assert job.status == NotificationJobStatus.CLAIMED
    assert job.claimed_by == "fast-worker"
    assert job.provider_message_id is None
