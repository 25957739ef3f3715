"""Weather-email subscription model.

Rows are created and deleted by the CRUD layer (sign-up and schedule
endpoints). The job pipeline only reads active rows through
SqlSubscriptionRegistry.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, Index, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from weathermail.db.models.base import (
    Base,
    TimestampTZ,
    UUIDPrimaryKey,
)


class WeatherSubscription(Base):
    """A user's request to receive the weather for one city by email."""

    __tablename__ = "weather_subscriptions"

    subscription_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Owning user (managed by the authentication layer)
    user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    city: Mapped[str] = mapped_column(String(200), nullable=False)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False)

    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=text("true"),
    )

    __table_args__ = (
        Index("ix_weather_subscriptions_active", "active"),
        Index("ix_weather_subscriptions_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<WeatherSubscription {self.subscription_id} city={self.city!r} active={self.active}>"
