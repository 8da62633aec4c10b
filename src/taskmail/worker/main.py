"""taskmail worker entry point.

This module provides the Worker class that:
- Claims due notification jobs in batches
- Hands each batch to the Dispatcher (bounded concurrency, rate-paced sends)
- Periodically returns stale claims to the queue
- Handles graceful shutdown via SIGTERM/SIGINT
- Optionally serves a liveness endpoint
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, NoReturn

from taskmail.services.backoff import BackoffPolicy
from taskmail.services.job_store import JobStoreService
from taskmail.services.rate_gate import RateGate
from taskmail.worker.dispatcher import Dispatcher

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from taskmail.core.config import DatabaseSettings, Settings
    from taskmail.db.models.jobs import NotificationJob
    from taskmail.services.delivery import DeliveryClient
    from taskmail.worker.dispatcher import BatchResult
    from taskmail.worker.health import HealthServer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerConfig:
    """Configuration for the worker process.

    Attributes:
        database: Database connection settings (used when no session factory is injected).
        worker_id: Unique identifier for this worker instance.
        batch_size: Maximum jobs claimed per poll.
        concurrency: Maximum jobs in flight at once.
        poll_interval: Seconds between polls when the queue is empty.
        stale_lock_timeout: Seconds after which a claim is considered abandoned.
        stale_check_interval: Seconds between stale-claim sweeps.
        error_pause: Seconds to pause after a failed loop iteration.
        send_rate: Maximum sends per second for this process (0 disables pacing).
        backoff: Retry delay policy.
        health_enabled: Serve the liveness endpoint.
        health_host: Liveness endpoint bind address.
        health_port: Liveness endpoint port.
    """

    database: DatabaseSettings | None = None
    worker_id: str = "worker-1"
    batch_size: int = 25
    concurrency: int = 5
    poll_interval: float = 0.5
    stale_lock_timeout: float = 300.0
    stale_check_interval: float = 60.0
    error_pause: float = 1.0
    send_rate: float = 2.0
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    health_enabled: bool = False
    health_host: str = "0.0.0.0"  # noqa: S104
    health_port: int = 8081

    @classmethod
    def from_settings(cls, settings: Settings) -> WorkerConfig:
        """Build the worker configuration from validated settings."""
        worker = settings.worker
        return cls(
            database=settings.database,
            worker_id=worker.worker_id,
            batch_size=worker.batch_size,
            concurrency=worker.concurrency,
            poll_interval=worker.poll_interval,
            stale_lock_timeout=worker.stale_lock_timeout,
            stale_check_interval=worker.stale_check_interval,
            error_pause=worker.error_pause,
            send_rate=worker.send_rate,
            backoff=BackoffPolicy.from_settings(worker),
            health_enabled=settings.health.enabled,
            health_host=settings.health.host,
            health_port=settings.health.port,
        )


class Worker:
    """Background worker that delivers notification jobs from PostgreSQL.

    Claims use SELECT ... FOR UPDATE SKIP LOCKED, so any number of workers
    can run against the same database.

    Example:
        settings = get_settings()
        worker = Worker(WorkerConfig.from_settings(settings), build_delivery_client(settings))
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        delivery_client: DeliveryClient | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            config: Worker configuration settings.
            delivery_client: Client used to send messages. Defaults to the log backend.
            session_factory: Session factory to use instead of creating an engine.
        """
        if delivery_client is None:
            from taskmail.services.delivery import LogDeliveryClient

            delivery_client = LogDeliveryClient()

        self.config = config
        self.delivery_client = delivery_client
        self._shutdown_event = asyncio.Event()
        self._engine: AsyncEngine | None = None
        self._session_factory = session_factory
        self._dispatcher: Dispatcher | None = None
        self._health_server: HealthServer | None = None
        self._started_at: datetime | None = None
        self._last_stale_check: float | None = None
        self.jobs_sent = 0
        self.jobs_retried = 0
        self.jobs_failed = 0

    @property
    def is_running(self) -> bool:
        return self._started_at is not None and not self._shutdown_event.is_set()

    async def start(self) -> None:
        """Start the worker and deliver jobs.

        This method runs until shutdown is requested via signal or stop().
        """
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, batch_size=%d, concurrency=%d, send_rate=%.2f",
            self.config.worker_id,
            self.config.batch_size,
            self.config.concurrency,
            self.config.send_rate,
        )

        if self._session_factory is None:
            from taskmail.db import create_engine_from_settings, create_session_factory

            if self.config.database is None:
                msg = "WorkerConfig.database is required when no session factory is given"
                raise ValueError(msg)
            self._engine = create_engine_from_settings(self.config.database)
            self._session_factory = create_session_factory(self._engine)

        self._dispatcher = Dispatcher(
            session_factory=self._session_factory,
            delivery_client=self.delivery_client,
            rate_gate=RateGate(self.config.send_rate),
            backoff=self.config.backoff,
            worker_id=self.config.worker_id,
            concurrency=self.config.concurrency,
        )

        health_task: asyncio.Task[None] | None = None
        if self.config.health_enabled:
            from taskmail.worker.health import HealthServer

            self._health_server = HealthServer.for_worker(self)
            health_task = asyncio.create_task(self._health_server.serve())

        try:
            await self._run_loop()
        finally:
            if health_task is not None and self._health_server is not None:
                self._health_server.should_exit = True
                await health_task

            await self.delivery_client.aclose()
            if self._engine is not None:
                await self._engine.dispose()

            logger.info(
                "Worker stopped: worker_id=%s, sent=%d, retried=%d, failed=%d, uptime=%s",
                self.config.worker_id,
                self.jobs_sent,
                self.jobs_retried,
                self.jobs_failed,
                self.get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown; the in-flight batch is allowed to finish."""
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def _run_loop(self) -> None:
        """Main processing loop that claims and dispatches batches."""
        while not self._shutdown_event.is_set():
            try:
                await self._maybe_reclaim_stale()

                jobs = await self._claim_batch()
                if not jobs:
                    await self._wait(self.config.poll_interval)
                    continue

                self._record(await self._dispatcher.run_batch(jobs))

            except Exception as e:
                # Log error but continue running
                logger.exception("Error in worker loop: %s", e)
                # Brief pause before retrying to avoid tight error loops
                await self._wait(self.config.error_pause)

    async def _wait(self, timeout: float) -> None:
        """Sleep up to ``timeout`` seconds, returning early on shutdown."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)

    async def _claim_batch(self) -> list[NotificationJob]:
        async with self._session_factory() as session:
            store = JobStoreService(session)
            jobs = await store.claim_batch(self.config.batch_size, self.config.worker_id)
            await session.commit()
            return jobs

    async def _maybe_reclaim_stale(self) -> int:
        """Return abandoned claims to the queue once per stale_check_interval."""
        now = time.monotonic()
        if (
            self._last_stale_check is not None
            and now - self._last_stale_check < self.config.stale_check_interval
        ):
            return 0

        cutoff = datetime.now(UTC) - timedelta(seconds=self.config.stale_lock_timeout)
        async with self._session_factory() as session:
            store = JobStoreService(session)
            count = await store.reclaim_stale(cutoff)
            await session.commit()
        # Only a committed sweep counts; a failed one is retried next iteration
        self._last_stale_check = now
        return count

    def _record(self, result: BatchResult) -> None:
        self.jobs_sent += result.sent
        self.jobs_retried += result.retried
        self.jobs_failed += result.failed

    def get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


# Global shutdown event for signal handlers, and the loop that owns it
_shutdown_event: asyncio.Event | None = None
_shutdown_loop: asyncio.AbstractEventLoop | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None and _shutdown_loop is not None:
        # Set the event in a thread-safe manner
        _shutdown_loop.call_soon_threadsafe(_shutdown_event.set)


async def _async_main(settings: Settings, shutdown_event: asyncio.Event) -> None:
    """Async entry point for the worker.

    Args:
        settings: Validated application settings.
        shutdown_event: Event to signal shutdown request.
    """
    from taskmail.services.delivery import build_delivery_client

    worker = Worker(WorkerConfig.from_settings(settings), build_delivery_client(settings))
    worker_task = asyncio.create_task(worker.start())
    shutdown_task = asyncio.create_task(shutdown_event.wait())

    # The worker only returns on its own if startup failed
    await asyncio.wait({worker_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

    if not worker_task.done():
        await worker.stop()
    shutdown_task.cancel()

    # Cooperative: the in-flight batch completes before start() returns
    await worker_task


def run() -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Loads and validates configuration (exits 1 if invalid)
    - Sets up logging
    - Registers signal handlers for graceful shutdown
    - Runs the async worker loop until a shutdown signal arrives
    """
    global _shutdown_event

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from taskmail.core.settings import get_settings

    # Exits with status 1 on invalid configuration
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)

    # Register signal handlers for graceful shutdown
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("%s worker %s starting...", settings.app_name, settings.app_version)

    async def _run_with_event() -> None:
        """Create event loop context and run main."""
        global _shutdown_event, _shutdown_loop
        _shutdown_loop = asyncio.get_running_loop()
        _shutdown_event = asyncio.Event()
        await _async_main(settings, _shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
