"""Job queue model for PostgreSQL-backed background processing.

One row is one scheduled run of the weather-email workflow for one
subscription:
- SKIP LOCKED for concurrent worker safety
- Retry with exponential backoff (attempt counter and next_run_at)
- Dead letter handling for failed jobs
- Partial unique index so a subscription has at most one open run
"""

from __future__ import annotations

import uuid
from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import BigInteger, DateTime, Enum, Index, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from weathermail.db.models.base import (
    Base,
    JobState,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDForeignKey,
    UUIDPrimaryKey,
)


class Job(Base):
    """One logical run of one weather-email subscription.

    Jobs are picked up by workers using SELECT ... FOR UPDATE SKIP LOCKED
    to ensure safe concurrent processing without external queue infrastructure.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Reference (not ownership) to weather_subscriptions.subscription_id
    subscription_id: Mapped[UUIDForeignKey] = mapped_column(nullable=False)

    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            create_constraint=True,
            values_callable=lambda states: [s.value for s in states],
        ),
        nullable=False,
        default=JobState.PENDING,
    )

    # Cadence boundary this run belongs to
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Eligible for claim once now >= next_run_at
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Lock tracking for concurrent workers
    locked_at: Mapped[OptionalTimestampTZ]
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    heartbeat_at: Mapped[OptionalTimestampTZ]

    # Retry tracking (attempts counts failed tries)
    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=5, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # {"city": ..., "recipient_email": ...} snapshotted at enqueue
    payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False)

    result_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    started_at: Mapped[OptionalTimestampTZ]
    completed_at: Mapped[OptionalTimestampTZ]
    duration_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        # Primary query for workers: claimable jobs ordered by due time
        Index("ix_jobs_state_next_run_at", "state", "next_run_at"),
        Index(
            "uq_jobs_subscription_open",
            "subscription_id",
            unique=True,
            postgresql_where=text("state IN ('pending', 'active', 'delayed')"),
        ),
        Index("ix_jobs_subscription_scheduled_for", "subscription_id", "scheduled_for"),
        # For stale claim recovery
        Index("ix_jobs_heartbeat_at", "heartbeat_at"),
        # For cleanup of old finished jobs
        Index("ix_jobs_completed_at", "completed_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Job {self.job_id} subscription={self.subscription_id} "
            f"state={self.state.value} attempts={self.attempts}/{self.max_attempts}>"
        )


JOB_ID_NAMESPACE = uuid.UUID("6f1c2f9e-3a57-4c55-9b1e-2d8f0c7a4e11")


def make_job_id(subscription_id: uuid.UUID, scheduled_for: datetime) -> uuid.UUID:
    """Derive the stable job id of one logical run of one subscription."""
    return uuid.uuid5(JOB_ID_NAMESPACE, f"{subscription_id}:{scheduled_for.isoformat()}")
