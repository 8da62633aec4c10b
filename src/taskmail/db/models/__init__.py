"""SQLAlchemy models for taskmail.

Importing this package registers every table on ``Base.metadata`` so that
Alembic autogenerate can see them.
"""

from taskmail.db.models.base import Base, NotificationJobStatus
from taskmail.db.models.jobs import NotificationJob

__all__ = [
    "Base",
    "NotificationJob",
    "NotificationJobStatus",
]
