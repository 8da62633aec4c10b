"""Allow running the worker with ``python -m taskmail.worker``."""

from taskmail.worker.main import run

run()
