"""Initial schema: weather subscriptions and the job queue.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

Creates:
- weather_subscriptions (owned by the CRUD layer, read by the scheduler)
- jobs (one row per scheduled weather-email run)
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Apply migration: Initial schema."""
    job_state = postgresql.ENUM(
        "pending",
        "active",
        "delayed",
        "completed",
        "failed",
        name="job_state",
        create_type=False,
    )
    job_state.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "weather_subscriptions",
        sa.Column(
            "subscription_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("city", sa.String(200), nullable=False),
        sa.Column("recipient_email", sa.String(320), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.PrimaryKeyConstraint("subscription_id", name=op.f("pk_weather_subscriptions")),
    )
    op.create_index(
        op.f("ix_weather_subscriptions_active"),
        "weather_subscriptions",
        ["active"],
        unique=False,
    )
    op.create_index(
        op.f("ix_weather_subscriptions_user_id"),
        "weather_subscriptions",
        ["user_id"],
        unique=False,
    )

    op.create_table(
        "jobs",
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("state", job_state, nullable=False, server_default=sa.text("'pending'")),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint("job_id", name=op.f("pk_jobs")),
    )
    op.create_index(
        op.f("ix_jobs_state_next_run_at"),
        "jobs",
        ["state", "next_run_at"],
        unique=False,
    )
    # At most one open run per subscription
    op.create_index(
        op.f("uq_jobs_subscription_open"),
        "jobs",
        ["subscription_id"],
        unique=True,
        postgresql_where=sa.text("state IN ('pending', 'active', 'delayed')"),
    )
    op.create_index(
        op.f("ix_jobs_subscription_scheduled_for"),
        "jobs",
        ["subscription_id", "scheduled_for"],
        unique=False,
    )
    op.create_index(op.f("ix_jobs_heartbeat_at"), "jobs", ["heartbeat_at"], unique=False)
    op.create_index(op.f("ix_jobs_completed_at"), "jobs", ["completed_at"], unique=False)


def downgrade() -> None:
    """Revert migration: Initial schema."""
    op.drop_index(op.f("ix_jobs_completed_at"), table_name="jobs")
    op.drop_index(op.f("ix_jobs_heartbeat_at"), table_name="jobs")
    op.drop_index(op.f("ix_jobs_subscription_scheduled_for"), table_name="jobs")
    op.drop_index(op.f("uq_jobs_subscription_open"), table_name="jobs")
    op.drop_index(op.f("ix_jobs_state_next_run_at"), table_name="jobs")
    op.drop_table("jobs")
    op.drop_index(op.f("ix_weather_subscriptions_user_id"), table_name="weather_subscriptions")
    op.drop_index(op.f("ix_weather_subscriptions_active"), table_name="weather_subscriptions")
    op.drop_table("weather_subscriptions")

    op.execute("DROP TYPE IF EXISTS job_state")
