"""Scheduler that turns active subscriptions into queued runs.

Time is cut into cadence windows aligned on the Unix epoch. On every tick
the scheduler enqueues one run per active subscription that has no run for
the current window yet. Ticking twice inside one window enqueues nothing
the second time, so an extra or restarted scheduler is harmless.

The scheduler never calls the weather API or the email sender.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from weathermail.services.job_queue import DuplicatePendingError, JobQueueError, utcnow

if TYPE_CHECKING:
    import uuid

    from weathermail.services.job_queue import JobStore
    from weathermail.services.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


def cadence_boundary(now: datetime, cadence: timedelta) -> datetime:
    """Start of the cadence window containing ``now``.

    >>> cadence_boundary(datetime(2026, 10, 19, 13, 45, tzinfo=UTC), timedelta(hours=1))
    datetime.datetime(2026, 10, 19, 13, 0, tzinfo=datetime.timezone.utc)
    """
    seconds = int(cadence.total_seconds())
    if seconds <= 0:
        msg = f"cadence must be positive, got {cadence}"
        raise ValueError(msg)
    epoch = int(now.timestamp())
    return datetime.fromtimestamp(epoch - epoch % seconds, UTC)


class Scheduler:
    """Enqueues due weather-email runs.

    Example:
        scheduler = Scheduler(store, registry, cadence=timedelta(days=1))
        job_ids = await scheduler.tick()
    """

    def __init__(
        self,
        store: JobStore,
        registry: SubscriptionRegistry,
        cadence: timedelta = timedelta(days=1),
    ) -> None:
        self.store = store
        self.registry = registry
        self.cadence = cadence

    async def tick(self, now: datetime | None = None) -> list[uuid.UUID]:
        """Enqueue a run for every active subscription due in this window.

        Raises:
            RegistryError: The subscription list could not be read.
            JobQueueError: The store could not report existing runs.

        Returns:
            IDs of the jobs enqueued by this tick.
        """
        now = now or utcnow()
        boundary = cadence_boundary(now, self.cadence)

        subscriptions = await self.registry.list_active_subscriptions()
        if not subscriptions:
            return []

        latest = await self.store.latest_scheduled_for(s.subscription_id for s in subscriptions)
        enqueued: list[uuid.UUID] = []

        for subscription in subscriptions:
            last_run = latest.get(subscription.subscription_id)
            if last_run is not None and last_run >= boundary:
                continue

            try:
                job_id = await self.store.enqueue(
                    subscription.subscription_id,
                    subscription.to_payload(),
                    boundary,
                    now=now,
                )
            except DuplicatePendingError:
                # Previous run still open; retried on the next tick
                logger.debug(
                    "Skipping subscription with open job: subscription_id=%s",
                    subscription.subscription_id,
                )
                continue
            except JobQueueError as e:
                logger.error(
                    "Failed to schedule subscription: subscription_id=%s, error=%s",
                    subscription.subscription_id,
                    e,
                )
                continue

            enqueued.append(job_id)

        if enqueued:
            logger.info(
                "Scheduler tick: boundary=%s, active=%d, enqueued=%d",
                boundary.isoformat(),
                len(subscriptions),
                len(enqueued),
            )
        return enqueued


async def run_scheduler_loop(
    store: JobStore,
    registry: SubscriptionRegistry,
    *,
    cadence: timedelta = timedelta(days=1),
    tick_interval: float = 60.0,
    retention: timedelta | None = None,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run scheduler ticks until ``shutdown_event`` is set.

    Args:
        store: Job store to enqueue into.
        registry: Source of active subscriptions.
        cadence: Length of one cadence window.
        tick_interval: Seconds between ticks.
        retention: When set, finished jobs older than this are purged each tick.
        shutdown_event: Event to signal shutdown.

    Raises:
        ValueError: ``retention`` is shorter than ``cadence``; the current
            window's run could be purged and enqueued again.
    """
    if retention is not None and retention < cadence:
        msg = f"retention ({retention}) must cover the cadence window ({cadence})"
        raise ValueError(msg)

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    scheduler = Scheduler(store, registry, cadence)
    logger.info(
        "Scheduler starting: cadence=%s, tick_interval=%ss, retention=%s",
        cadence,
        tick_interval,
        retention,
    )

    while not shutdown_event.is_set():
        try:
            await scheduler.tick()
            if retention:
                await store.purge_finished(retention)
        except Exception as e:
            logger.exception("Error in scheduler loop: %s", e)

        # Wait for next tick (uses wait_for to allow shutdown)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=tick_interval)

    logger.info("Scheduler stopped")
