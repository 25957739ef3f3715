"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Reusable column type annotations
- The job state enum shared by the queue backends
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

UUIDForeignKey = Annotated[uuid.UUID, mapped_column(UUID(as_uuid=True))]

TimestampTZ = Annotated[
    datetime,
    mapped_column(DateTime(timezone=True), server_default=text("now()")),
]

OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(DateTime(timezone=True), nullable=True),
]


class Base(DeclarativeBase):
    """Declarative base for all weathermail models."""

    metadata = metadata
    registry = type_registry


class JobState(enum.Enum):
    """Lifecycle state of a weather-email job.

    Values:
        PENDING: Fresh run waiting for its cadence boundary
        ACTIVE: Claimed by exactly one worker
        DELAYED: Waiting for a retry (after a failure or a stale claim)
        COMPLETED: Weather fetched and email sent
        FAILED: Dead-lettered, never retried automatically
    """

    PENDING = "pending"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


# States that count as "outstanding" for the one-run-per-subscription rule
OPEN_STATES = (JobState.PENDING, JobState.ACTIVE, JobState.DELAYED)

# States a worker may claim from
CLAIMABLE_STATES = (JobState.PENDING, JobState.DELAYED)

TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)
