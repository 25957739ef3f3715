"""Read-only view of weather-email subscriptions.

The scheduler pulls the list of active subscriptions on every tick; it never
writes to the registry and does not require change notifications.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from weathermail.db.models.subscriptions import WeatherSubscription

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when the subscription list cannot be read."""

    pass


@dataclass(frozen=True, slots=True)
class Subscription:
    """Snapshot of one subscription as seen by the scheduler."""

    subscription_id: uuid.UUID
    city: str
    recipient_email: str
    active: bool = True

    def to_payload(self) -> dict[str, str]:
        """Job payload snapshot: everything a worker needs for one run."""
        return {"city": self.city, "recipient_email": self.recipient_email}


class SubscriptionRegistry(abc.ABC):
    @abc.abstractmethod
    async def list_active_subscriptions(self) -> list[Subscription]:
        """Return every subscription currently marked active."""


class SqlSubscriptionRegistry(SubscriptionRegistry):
    """Reads the weather_subscriptions table owned by the CRUD layer."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_active_subscriptions(self) -> list[Subscription]:
        stmt = (
            select(WeatherSubscription)
            .where(WeatherSubscription.active.is_(True))
            .order_by(WeatherSubscription.created_at)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list subscriptions: %s", str(e))
            raise RegistryError(f"Failed to list subscriptions: {e}") from e

        return [
            Subscription(
                subscription_id=row.subscription_id,
                city=row.city,
                recipient_email=row.recipient_email,
                active=row.active,
            )
            for row in rows
        ]


class StaticSubscriptionRegistry(SubscriptionRegistry):
    """In-memory registry for tests and local runs.

    Subscriptions can be added, deactivated or removed between ticks to
    simulate changes made through the CRUD layer.
    """

    def __init__(self, subscriptions: Iterable[Subscription] = ()) -> None:
        self._subscriptions: dict[uuid.UUID, Subscription] = {
            s.subscription_id: s for s in subscriptions
        }

    def add(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.subscription_id] = subscription

    def remove(self, subscription_id: uuid.UUID) -> None:
        self._subscriptions.pop(subscription_id, None)

    def deactivate(self, subscription_id: uuid.UUID) -> None:
        current = self._subscriptions.get(subscription_id)
        if current is not None:
            self._subscriptions[subscription_id] = Subscription(
                subscription_id=current.subscription_id,
                city=current.city,
                recipient_email=current.recipient_email,
                active=False,
            )

    async def list_active_subscriptions(self) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.active]
