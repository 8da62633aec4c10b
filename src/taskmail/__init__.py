"""taskmail - durable outbound notification delivery for the task tracker.

Domain events (task assigned, sprint started, password reset, ...) are turned
into notification jobs stored in PostgreSQL and delivered by competing worker
processes with retries, rate pacing and stale-lock recovery.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
