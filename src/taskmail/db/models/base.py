"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable annotated column types for UUIDs and timestamps
- The notification job status enum
"""

import enum
import uuid
from datetime import datetime
from typing import Annotated

from sqlalchemy import DateTime, MetaData, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)

type_registry = registry()

# UUID primary key with server-side default generation
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    ),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

# Optional timestamp with timezone
OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]


class Base(DeclarativeBase):
    """Declarative base for all taskmail models."""

    metadata = metadata
    registry = type_registry


class NotificationJobStatus(enum.Enum):
    """Lifecycle status of a notification job.

    Values:
        QUEUED: Waiting to be claimed once next_attempt_at has passed
        CLAIMED: Leased by exactly one worker (claimed_at/claimed_by set)
        SENT: Delivered; terminal
        FAILED: Permanent failure or attempts exhausted; terminal
    """

    QUEUED = "queued"
    CLAIMED = "claimed"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NotificationJobStatus.SENT, NotificationJobStatus.FAILED)
