"""taskmail worker service.

PostgreSQL-backed delivery of outbound notifications:
- Batch claiming shared safely between worker processes
- Bounded-concurrency, rate-paced sends with retries and backoff
- Stale-claim reclamation for crashed workers

Usage:
    # Run as module
    python -m taskmail.worker

    # Or via the console script
    taskmail-worker
"""

from taskmail.worker.main import Worker, WorkerConfig, run

__all__ = ["Worker", "WorkerConfig", "run"]
