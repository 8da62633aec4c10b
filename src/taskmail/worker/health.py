"""Liveness endpoint for the worker process.

A tiny FastAPI app served by an embedded uvicorn server on the worker's own
event loop. It reports process state only and never touches the job store,
so it stays responsive while the database is unavailable.
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import FastAPI

if TYPE_CHECKING:
    from collections.abc import Iterator

    from taskmail.worker.main import Worker

logger = logging.getLogger(__name__)


def create_health_app(worker: Worker) -> FastAPI:
    """Create the liveness app for ``worker``."""
    app = FastAPI(
        title="taskmail worker",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for container orchestration."""
        return {
            "status": "healthy" if worker.is_running else "stopping",
            "worker_id": worker.config.worker_id,
            "uptime": worker.get_uptime(),
            "jobs_sent": worker.jobs_sent,
            "jobs_retried": worker.jobs_retried,
            "jobs_failed": worker.jobs_failed,
        }

    return app


class HealthServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the worker process."""

    @classmethod
    def for_worker(cls, worker: Worker) -> HealthServer:
        config = uvicorn.Config(
            create_health_app(worker),
            host=worker.config.health_host,
            port=worker.config.health_port,
            log_level="warning",
            access_log=False,
        )
        logger.info(
            "Health endpoint enabled: host=%s, port=%d",
            worker.config.health_host,
            worker.config.health_port,
        )
        return cls(config)

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield
