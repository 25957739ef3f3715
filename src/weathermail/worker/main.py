"""Weathermail worker service entry point.

This module provides:
- Worker: polls the job store, runs the weather-email handler and reports
  the outcome
- WorkerPool: a fixed number of workers sharing one store and handler
- run(): process entry that wires settings, database, upstream clients,
  the worker pool and the scheduler loop, with SIGTERM/SIGINT handling
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING, Any, NoReturn

from weathermail.core.errors import UpstreamError
from weathermail.services.job_queue import StaleClaimError, utcnow

if TYPE_CHECKING:
    from weathermail.core.config import Settings
    from weathermail.db.models.jobs import Job
    from weathermail.services.job_queue import JobStore

logger = logging.getLogger(__name__)

# Handler signature: (job, heartbeat) -> result stored on the completed job
JobHandler = Callable[["Job", Callable[[], Awaitable[None]]], Awaitable[dict[str, Any] | None]]


@dataclass
class WorkerConfig:
    """Configuration for one worker.

    Attributes:
        worker_id: Unique identifier recorded as the job's lock owner.
        poll_interval: Seconds to wait when no job is eligible.
        stale_threshold_seconds: Heartbeat age after which an active job is
            handed back to the queue.
        stale_check_interval: Seconds between stale-claim sweeps.
        shutdown_timeout: Seconds to wait for graceful shutdown.
    """

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 1.0
    stale_threshold_seconds: int = 600
    stale_check_interval: float = 60.0
    shutdown_timeout: float = 30.0


class Worker:
    """Background worker that processes weather-email jobs.

    Claims go through the JobStore, which guarantees a job is held by at
    most one worker. Multiple workers, in one process or several, can run
    concurrently.

    Example:
        worker = Worker(store, handler, WorkerConfig(worker_id="worker-1"))
        await worker.start()
    """

    def __init__(
        self,
        store: JobStore,
        handler: JobHandler,
        config: WorkerConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the worker.

        Args:
            store: Job store shared with the scheduler and other workers.
            handler: Coroutine run for each claimed job.
            config: Worker configuration settings.
            clock: Source of the current time passed to the store.
        """
        self.store = store
        self.handler = handler
        self.config = config or WorkerConfig()
        self.clock = clock
        self._shutdown_event = asyncio.Event()
        self._started_at: datetime | None = None
        self._last_stale_check: float | None = None
        self.jobs_processed = 0
        self.jobs_retried = 0
        self.jobs_failed = 0

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    async def start(self) -> None:
        """Start the worker and process jobs until stop() is called."""
        self._started_at = datetime.now(UTC)
        logger.info("Worker starting: worker_id=%s", self.worker_id)

        try:
            await self._run_loop()
        finally:
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, retried=%d, failed=%d, uptime=%s",
                self.worker_id,
                self.jobs_processed,
                self.jobs_retried,
                self.jobs_failed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown; the job in progress is finished first."""
        logger.info("Worker shutdown requested: worker_id=%s", self.worker_id)
        self._shutdown_event.set()

    async def _run_loop(self) -> None:
        """Main processing loop that polls for and processes jobs."""
        while not self._shutdown_event.is_set():
            try:
                await self._release_stale_if_due()

                if await self.process_next():
                    continue

                # Idle: wait before next poll (uses wait_for to allow shutdown)
                await self._wait(self.config.poll_interval)

            except Exception as e:
                # Store outage: log and keep running
                logger.exception("Error in worker loop: %s", e)
                await self._wait(1.0)

    async def _wait(self, timeout: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)

    async def process_next(self) -> bool:
        """Claim and process one job.

        Returns:
            True if a job was claimed, False if none was eligible.

        Raises:
            JobQueueError: If the store cannot be reached for the claim.
        """
        job = await self.store.claim(self.worker_id, now=self.clock())
        if job is None:
            return False

        await self._process_job(job)
        return True

    async def _process_job(self, job: Job) -> None:
        logger.info(
            "Processing job: job_id=%s, subscription_id=%s, attempt=%d/%d",
            job.job_id,
            job.subscription_id,
            job.attempts + 1,
            job.max_attempts,
        )
        started = time.monotonic()
        heartbeat = partial(self._heartbeat, job)

        try:
            result = await self.handler(job, heartbeat)
        except StaleClaimError as e:
            logger.warning("Dropping job after losing claim: job_id=%s, %s", job.job_id, e)
            return
        except UpstreamError as e:
            await self._report_failure(job, str(e), retryable=e.retryable)
            return
        except Exception as e:
            # Unknown failures are retried; attempts bound the damage
            logger.exception("Unexpected error in job handler: job_id=%s", job.job_id)
            await self._report_failure(job, f"{type(e).__name__}: {e}", retryable=True)
            return

        try:
            await self.store.report_success(
                job.job_id,
                worker_id=self.worker_id,
                result=result,
                now=self.clock(),
            )
        except StaleClaimError as e:
            logger.warning(
                "Job finished after its claim was released: job_id=%s, %s", job.job_id, e
            )
            return

        self.jobs_processed += 1
        logger.debug(
            "Job handled: job_id=%s, elapsed=%.3fs", job.job_id, time.monotonic() - started
        )

    async def _heartbeat(self, job: Job) -> None:
        await self.store.heartbeat(job.job_id, self.worker_id, now=self.clock())

    async def _report_failure(self, job: Job, reason: str, *, retryable: bool) -> None:
        logger.warning(
            "Job failed: job_id=%s, retryable=%s, error=%s", job.job_id, retryable, reason
        )
        try:
            will_retry = await self.store.report_failure(
                job.job_id,
                reason,
                retryable,
                worker_id=self.worker_id,
                now=self.clock(),
            )
        except StaleClaimError as e:
            logger.warning(
                "Failure not recorded, claim already released: job_id=%s, %s", job.job_id, e
            )
            return

        if will_retry:
            self.jobs_retried += 1
        else:
            self.jobs_failed += 1

    async def _release_stale_if_due(self) -> None:
        """Hand back jobs of workers that stopped heartbeating."""
        now = time.monotonic()
        if (
            self._last_stale_check is not None
            and now - self._last_stale_check < self.config.stale_check_interval
        ):
            return
        self._last_stale_check = now

        count = await self.store.release_stale(
            timedelta(seconds=self.config.stale_threshold_seconds),
            now=self.clock(),
        )
        if count > 0:
            logger.warning("Reset %d stale jobs", count)

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


class WorkerPool:
    """Fixed-size group of workers sharing one store and one handler.

    Example:
        pool = WorkerPool(store, handler, size=4)
        task = asyncio.create_task(pool.start())
        ...
        await pool.stop()
        await task
    """

    def __init__(
        self,
        store: JobStore,
        handler: JobHandler,
        size: int = 4,
        config: WorkerConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if size < 1:
            msg = f"pool size must be >= 1, got {size}"
            raise ValueError(msg)

        base = config or WorkerConfig()
        self.workers = [
            Worker(
                store,
                handler,
                WorkerConfig(
                    worker_id=f"{base.worker_id}-{index}",
                    poll_interval=base.poll_interval,
                    stale_threshold_seconds=base.stale_threshold_seconds,
                    stale_check_interval=base.stale_check_interval,
                    shutdown_timeout=base.shutdown_timeout,
                ),
                clock=clock,
            )
            for index in range(size)
        ]

    async def start(self) -> None:
        """Run every worker until all of them have stopped."""
        logger.info("Worker pool starting: size=%d", len(self.workers))
        await asyncio.gather(*(worker.start() for worker in self.workers))

    async def stop(self) -> None:
        for worker in self.workers:
            await worker.stop()

    def stats(self) -> dict[str, int]:
        return {
            "workers": len(self.workers),
            "processed": sum(w.jobs_processed for w in self.workers),
            "retried": sum(w.jobs_retried for w in self.workers),
            "failed": sum(w.jobs_failed for w in self.workers),
        }


def _handle_shutdown(signum: int, shutdown_event: asyncio.Event) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    shutdown_event.set()


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Route SIGTERM and SIGINT to ``shutdown_event`` on the running loop."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_shutdown, sig, shutdown_event)


def _get_config_from_settings(settings: Settings) -> WorkerConfig:
    """Build the base WorkerConfig from application settings."""
    return WorkerConfig(
        poll_interval=settings.worker.poll_interval,
        stale_threshold_seconds=settings.worker.stale_threshold_seconds,
        stale_check_interval=settings.worker.stale_check_interval,
        shutdown_timeout=settings.worker.shutdown_timeout,
    )


async def _async_main(settings: Settings, shutdown_event: asyncio.Event) -> None:
    """Async entry point for the worker process.

    Args:
        settings: Validated application settings.
        shutdown_event: Event to signal shutdown request.
    """
    # Import here so module import stays cheap for tests
    from weathermail.db import create_engine_from_settings, create_session_factory
    from weathermail.services.backoff import BackoffPolicy
    from weathermail.services.email import EmailSender
    from weathermail.services.job_queue import SqlJobStore
    from weathermail.services.subscriptions import SqlSubscriptionRegistry
    from weathermail.services.weather import WeatherClient
    from weathermail.worker.handlers import WeatherEmailHandler
    from weathermail.worker.scheduler import run_scheduler_loop

    engine = create_engine_from_settings(settings.database)
    session_factory = create_session_factory(engine)

    backoff = BackoffPolicy(
        base_seconds=settings.queue.base_backoff_seconds,
        max_seconds=settings.queue.max_backoff_seconds,
        jitter_ratio=settings.queue.jitter_ratio,
    )
    store = SqlJobStore(session_factory, backoff=backoff, max_attempts=settings.queue.max_attempts)
    config = _get_config_from_settings(settings)

    try:
        async with WeatherClient(settings.weather) as weather:
            handler = WeatherEmailHandler(
                weather,
                EmailSender(settings.smtp),
                step_timeout=settings.worker.step_timeout,
                app_name=settings.app_name,
            )
            pool = WorkerPool(store, handler, size=settings.worker.pool_size, config=config)

            tasks = [asyncio.create_task(pool.start())]
            if settings.scheduler.enabled:
                retention = (
                    timedelta(days=settings.queue.retention_days)
                    if settings.queue.retention_days
                    else None
                )
                tasks.append(
                    asyncio.create_task(
                        run_scheduler_loop(
                            store,
                            SqlSubscriptionRegistry(session_factory),
                            cadence=timedelta(seconds=settings.scheduler.cadence_seconds),
                            tick_interval=settings.scheduler.tick_interval,
                            retention=retention,
                            shutdown_event=shutdown_event,
                        )
                    )
                )

            # Wait for shutdown signal
            await shutdown_event.wait()

            # Request graceful shutdown
            await pool.stop()

            # Wait for workers to finish their current job (with timeout)
            try:
                await asyncio.wait_for(asyncio.gather(*tasks), timeout=config.shutdown_timeout)
            except TimeoutError:
                logger.warning("Workers did not stop within timeout, forcing shutdown")
                for task in tasks:
                    task.cancel()
                # Let cancelled jobs unwind before the engine goes away
                await asyncio.gather(*tasks, return_exceptions=True)

            logger.info("Worker pool totals: %s", pool.stats())
    finally:
        await engine.dispose()


def run() -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Sets up logging
    - Loads and validates settings (exits with status 1 on failure)
    - Registers signal handlers for graceful shutdown
    - Runs the worker pool and the scheduler loop
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from weathermail.core.settings import get_settings

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)

    logger.info("Weathermail worker starting: version=%s", settings.app_version)

    async def _run_with_event() -> None:
        """Create the shutdown event on the running loop and run main."""
        shutdown_event = asyncio.Event()
        _install_signal_handlers(shutdown_event)
        await _async_main(settings, shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("Weathermail worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
