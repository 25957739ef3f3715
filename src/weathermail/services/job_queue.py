"""Job store for scheduled weather-email runs.

This module defines the JobStore contract shared by every backend and the
PostgreSQL implementation. The PostgreSQL backend uses
SELECT ... FOR UPDATE SKIP LOCKED for safe concurrent access.

Key features:
- At most one open (pending/active/delayed) job per subscription
- Atomic job claiming with SKIP LOCKED (no duplicate processing)
- Exponential backoff with jitter for retries
- Dead letter handling for failed jobs
- Stale claim recovery for workers that died mid-job

Usage:
    from weathermail.services.job_queue import SqlJobStore

    store = SqlJobStore(session_factory)
    job = await store.claim("worker-1")
    if job:
        try:
            ...  # fetch weather, send email
            await store.report_success(job.job_id, worker_id="worker-1")
        except Exception as e:
            await store.report_failure(job.job_id, str(e), retryable=True, worker_id="worker-1")
"""

from __future__ import annotations

import abc
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from weathermail.db.models.base import (
    CLAIMABLE_STATES,
    OPEN_STATES,
    TERMINAL_STATES,
    JobState,
)
from weathermail.db.models.jobs import Job, make_job_id
from weathermail.services.backoff import BackoffPolicy

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5

STALE_CLAIM_ERROR = "stale claim released"


class JobQueueError(Exception):
    """Base exception for job queue operations."""

    pass


class JobNotFoundError(JobQueueError):
    """Raised when a job cannot be found."""

    pass


class DuplicatePendingError(JobQueueError):
    """Raised when a subscription already has an open run.

    This is the expected signal that a previous run is still outstanding;
    the scheduler swallows it.
    """

    def __init__(self, subscription_id: uuid.UUID, message: str | None = None) -> None:
        self.subscription_id = subscription_id
        super().__init__(message or f"Subscription already has an open job: {subscription_id}")


class StaleClaimError(JobQueueError):
    """Raised when a worker reports on a job it no longer owns.

    Happens after release_stale() handed the job back to the queue, for
    example because the worker stopped heartbeating.
    """

    pass


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# State transitions shared by all backends
# ---------------------------------------------------------------------------


def new_job(
    subscription_id: uuid.UUID,
    payload: dict[str, Any],
    run_at: datetime,
    max_attempts: int,
    now: datetime,
) -> Job:
    """Build a fresh PENDING job for one cadence boundary."""
    return Job(
        job_id=make_job_id(subscription_id, run_at),
        subscription_id=subscription_id,
        state=JobState.PENDING,
        scheduled_for=run_at,
        next_run_at=run_at,
        attempts=0,
        max_attempts=max_attempts,
        payload_json=dict(payload),
        created_at=now,
        updated_at=now,
    )


def apply_claim(job: Job, worker_id: str, now: datetime) -> None:
    job.state = JobState.ACTIVE
    job.locked_by = worker_id
    job.locked_at = now
    job.heartbeat_at = now
    job.started_at = now
    job.updated_at = now


def check_owner(job: Job, worker_id: str | None) -> None:
    """Ensure the job is still ACTIVE and, if given, held by ``worker_id``.

    Raises:
        StaleClaimError: If the claim was released or taken over.
    """
    if job.state != JobState.ACTIVE:
        msg = f"Job {job.job_id} is {job.state.value}, not active"
        raise StaleClaimError(msg)
    if worker_id is not None and job.locked_by != worker_id:
        msg = f"Job {job.job_id} is held by {job.locked_by}, not {worker_id}"
        raise StaleClaimError(msg)


def _clear_lock(job: Job) -> None:
    job.locked_at = None
    job.locked_by = None
    job.heartbeat_at = None


def _record_duration(job: Job, now: datetime) -> None:
    if job.started_at:
        job.duration_ms = int((now - job.started_at).total_seconds() * 1000)


def apply_success(job: Job, result: dict[str, Any] | None, now: datetime) -> None:
    job.state = JobState.COMPLETED
    job.completed_at = now
    job.updated_at = now
    job.result_json = result
    job.last_error = None
    _record_duration(job, now)
    _clear_lock(job)


def apply_failure(
    job: Job,
    reason: str,
    retryable: bool,
    backoff: BackoffPolicy,
    now: datetime,
) -> bool:
    """Record a failed attempt and either reschedule or dead-letter the job.

    Returns:
        True if the job will be retried, False if it is dead-lettered.
    """
    job.attempts += 1
    job.last_error = reason
    job.updated_at = now
    _clear_lock(job)

    if retryable and job.attempts < job.max_attempts:
        delay = backoff.delay(job.attempts)
        job.state = JobState.DELAYED
        job.next_run_at = now + delay
        logger.info(
            "Job scheduled for retry: job_id=%s, subscription_id=%s, "
            "attempt=%d/%d, retry_at=%s, backoff=%.1fs",
            job.job_id,
            job.subscription_id,
            job.attempts,
            job.max_attempts,
            job.next_run_at.isoformat(),
            delay.total_seconds(),
        )
        return True

    job.state = JobState.FAILED
    job.completed_at = now
    _record_duration(job, now)
    logger.warning(
        "Job dead-lettered: job_id=%s, subscription_id=%s, attempts=%d, retryable=%s, error=%s",
        job.job_id,
        job.subscription_id,
        job.attempts,
        retryable,
        reason,
    )
    return False


def apply_release(job: Job, now: datetime) -> None:
    job.state = JobState.DELAYED
    job.next_run_at = now
    job.last_error = STALE_CLAIM_ERROR
    job.updated_at = now
    _clear_lock(job)


def apply_requeue(job: Job, now: datetime) -> None:
    job.state = JobState.PENDING
    job.next_run_at = now
    job.attempts = 0
    job.completed_at = None
    job.last_error = None
    job.duration_ms = None
    job.updated_at = now


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class JobStore(abc.ABC):
    """Durable queue of weather-email runs.

    Every operation is atomic with respect to concurrent callers. ``now``
    defaults to the current UTC time and exists so tests can drive the clock.
    """

    @abc.abstractmethod
    async def enqueue(
        self,
        subscription_id: uuid.UUID,
        payload: dict[str, Any],
        run_at: datetime,
        *,
        now: datetime | None = None,
    ) -> uuid.UUID:
        """Insert a PENDING job, or raise DuplicatePendingError."""

    @abc.abstractmethod
    async def claim(self, worker_id: str, now: datetime | None = None) -> Job | None:
        """Take exclusive ownership of the eligible job with the oldest next_run_at."""

    @abc.abstractmethod
    async def heartbeat(
        self, job_id: uuid.UUID, worker_id: str, now: datetime | None = None
    ) -> None:
        """Refresh the liveness timestamp of an ACTIVE job."""

    @abc.abstractmethod
    async def report_success(
        self,
        job_id: uuid.UUID,
        *,
        worker_id: str | None = None,
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Move an ACTIVE job to COMPLETED."""

    @abc.abstractmethod
    async def report_failure(
        self,
        job_id: uuid.UUID,
        reason: str,
        retryable: bool,
        *,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Move an ACTIVE job to DELAYED (returns True) or FAILED (returns False)."""

    @abc.abstractmethod
    async def release_stale(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Return ACTIVE jobs without a recent heartbeat to DELAYED."""

    @abc.abstractmethod
    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        """Retrieve a job by ID."""

    @abc.abstractmethod
    async def count_by_state(self) -> dict[JobState, int]:
        """Count jobs per state (states without jobs map to 0)."""

    @abc.abstractmethod
    async def get_failed_jobs(self, limit: int = 100) -> list[Job]:
        """Dead-lettered jobs, most recent first."""

    @abc.abstractmethod
    async def retry_failed_job(self, job_id: uuid.UUID, now: datetime | None = None) -> None:
        """Manually move a FAILED job back to PENDING with a fresh attempt budget."""

    @abc.abstractmethod
    async def latest_scheduled_for(
        self, subscription_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, datetime]:
        """Most recent cadence boundary that has a job, per subscription."""

    @abc.abstractmethod
    async def purge_finished(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Delete COMPLETED/FAILED jobs finished before ``now - older_than``."""


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------


class JobQueueService:
    """PostgreSQL-backed job queue bound to one session.

    Uses SELECT ... FOR UPDATE SKIP LOCKED for safe concurrent job claiming.
    Workers can safely compete for jobs without risk of duplicate processing.
    Methods flush but never commit; the caller owns the transaction.

    Attributes:
        session: SQLAlchemy async session for database operations.
        backoff: Retry delay policy.
        default_max_attempts: Attempt ceiling given to new jobs.
    """

    def __init__(
        self,
        session: AsyncSession,
        backoff: BackoffPolicy | None = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.session = session
        self.backoff = backoff or BackoffPolicy()
        self.default_max_attempts = default_max_attempts

    async def enqueue(
        self,
        subscription_id: uuid.UUID,
        payload: dict[str, Any],
        run_at: datetime,
        *,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> uuid.UUID:
        """Add a new run for a subscription.

        Args:
            subscription_id: Subscription the run belongs to.
            payload: {"city", "recipient_email"} snapshot.
            run_at: Cadence boundary; also the first eligible time.
            max_attempts: Attempt ceiling. Defaults to default_max_attempts.
            now: Current time (defaults to UTC now).

        Returns:
            UUID of the created job.

        Raises:
            DuplicatePendingError: If the subscription already has an open
                job, or this exact run already exists.
            JobQueueError: If job creation fails.
        """
        now = now or utcnow()

        try:
            existing = await self.session.execute(
                select(Job.job_id)
                .where(
                    Job.subscription_id == subscription_id,
                    Job.state.in_(OPEN_STATES),
                )
                .limit(1)
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicatePendingError(subscription_id)

            job = new_job(
                subscription_id,
                payload,
                run_at,
                max_attempts or self.default_max_attempts,
                now,
            )
            # Savepoint so a lost insert race leaves the caller's transaction usable
            async with self.session.begin_nested():
                self.session.add(job)
                await self.session.flush()

        except IntegrityError as e:
            # Partial unique index or primary key: someone else enqueued first
            logger.debug("Concurrent enqueue lost: subscription_id=%s", subscription_id)
            raise DuplicatePendingError(subscription_id) from e
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue job: %s", str(e))
            raise JobQueueError(f"Failed to enqueue job: {e}") from e

        logger.info(
            "Job enqueued: job_id=%s, subscription_id=%s, run_at=%s",
            job.job_id,
            subscription_id,
            run_at.isoformat(),
        )
        return job.job_id

    async def claim(self, worker_id: str, now: datetime | None = None) -> Job | None:
        """Claim the next eligible job for processing.

        Uses SELECT ... FOR UPDATE SKIP LOCKED to safely claim a job
        without race conditions. Workers can call this concurrently.

        Args:
            worker_id: Unique identifier for the claiming worker.
            now: Current time (defaults to UTC now).

        Returns:
            The claimed Job if one was available, None otherwise.

        Raises:
            JobQueueError: If claim operation fails.
        """
        now = now or utcnow()

        try:
            stmt = (
                select(Job)
                .where(
                    Job.state.in_(CLAIMABLE_STATES),
                    Job.next_run_at <= now,
                )
                .order_by(Job.next_run_at, Job.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )

            result = await self.session.execute(stmt)
            job = result.scalar_one_or_none()

            if job is None:
                return None

            apply_claim(job, worker_id, now)
            await self.session.flush()

            logger.info(
                "Job claimed: job_id=%s, worker_id=%s, subscription_id=%s, attempt=%d/%d",
                job.job_id,
                worker_id,
                job.subscription_id,
                job.attempts + 1,
                job.max_attempts,
            )

            return job

        except SQLAlchemyError as e:
            logger.error("Failed to claim job: %s", str(e))
            raise JobQueueError(f"Failed to claim job: {e}") from e

    async def heartbeat(
        self, job_id: uuid.UUID, worker_id: str, now: datetime | None = None
    ) -> None:
        """Refresh heartbeat_at of a job held by ``worker_id``.

        Raises:
            StaleClaimError: If the job is no longer held by this worker.
            JobQueueError: If the update fails.
        """
        now = now or utcnow()

        try:
            stmt = (
                update(Job)
                .where(
                    Job.job_id == job_id,
                    Job.state == JobState.ACTIVE,
                    Job.locked_by == worker_id,
                )
                .values(heartbeat_at=now, updated_at=now)
                .returning(Job.job_id)
            )
            result = await self.session.execute(stmt)
            if result.scalar_one_or_none() is None:
                msg = f"Job {job_id} is no longer held by {worker_id}"
                raise StaleClaimError(msg)

        except SQLAlchemyError as e:
            logger.error("Failed to heartbeat job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to heartbeat job: {e}") from e

    async def report_success(
        self,
        job_id: uuid.UUID,
        *,
        worker_id: str | None = None,
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        """Mark a job as successfully completed.

        Args:
            job_id: UUID of the job to complete.
            worker_id: Claiming worker; when given, ownership is checked.
            result: Optional result data to store with the job.
            now: Current time (defaults to UTC now).

        Raises:
            JobNotFoundError: If the job does not exist.
            StaleClaimError: If the job is no longer held by the worker.
            JobQueueError: If the update fails.
        """
        now = now or utcnow()

        try:
            job = await self._get_job(job_id, for_update=True)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")

            check_owner(job, worker_id)
            apply_success(job, result, now)
            await self.session.flush()

            logger.info(
                "Job completed: job_id=%s, subscription_id=%s, duration_ms=%s",
                job_id,
                job.subscription_id,
                job.duration_ms,
            )

        except SQLAlchemyError as e:
            logger.error("Failed to complete job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to complete job: {e}") from e

    async def report_failure(
        self,
        job_id: uuid.UUID,
        reason: str,
        retryable: bool,
        *,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Record a failed attempt, scheduling a retry or dead-lettering.

        A retryable failure with attempts left moves the job to DELAYED with
        exponential backoff. A permanent failure, or one that exhausts
        max_attempts, moves it to FAILED.

        Returns:
            True if the job will be retried, False if it's dead-lettered.

        Raises:
            JobNotFoundError: If the job does not exist.
            StaleClaimError: If the job is no longer held by the worker.
            JobQueueError: If the update fails.
        """
        now = now or utcnow()

        try:
            job = await self._get_job(job_id, for_update=True)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")

            check_owner(job, worker_id)
            will_retry = apply_failure(job, reason, retryable, self.backoff, now)
            await self.session.flush()
            return will_retry

        except SQLAlchemyError as e:
            logger.error("Failed to fail job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to fail job: {e}") from e

    async def release_stale(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Reset jobs whose worker stopped heartbeating.

        Workers may crash while processing jobs. Jobs that have been ACTIVE
        without a heartbeat for longer than ``older_than`` are moved to
        DELAYED and become claimable immediately.

        Returns:
            Number of stale jobs reset.
        """
        now = now or utcnow()
        threshold = now - older_than

        try:
            stmt = (
                update(Job)
                .where(
                    Job.state == JobState.ACTIVE,
                    Job.heartbeat_at < threshold,
                )
                .values(
                    state=JobState.DELAYED,
                    next_run_at=now,
                    locked_at=None,
                    locked_by=None,
                    heartbeat_at=None,
                    last_error=STALE_CLAIM_ERROR,
                    updated_at=now,
                )
                .returning(Job.job_id)
            )

            result = await self.session.execute(stmt)
            stale_job_ids = list(result.scalars().all())

            if stale_job_ids:
                logger.warning(
                    "Released %d stale jobs: %s",
                    len(stale_job_ids),
                    stale_job_ids,
                )

            return len(stale_job_ids)

        except SQLAlchemyError as e:
            logger.error("Failed to release stale jobs: %s", str(e))
            raise JobQueueError(f"Failed to release stale jobs: {e}") from e

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        return await self._get_job(job_id)

    async def count_by_state(self) -> dict[JobState, int]:
        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self.session.execute(stmt)
        counts = {state: 0 for state in JobState}
        for state, count in result.all():
            counts[state] = count
        return counts

    async def get_failed_jobs(self, limit: int = 100) -> list[Job]:
        """Retrieve failed jobs (dead letter queue), most recent first."""
        stmt = (
            select(Job)
            .where(Job.state == JobState.FAILED)
            .order_by(Job.completed_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def retry_failed_job(self, job_id: uuid.UUID, now: datetime | None = None) -> None:
        """Manually retry a failed job (move from dead letter back to pending).

        Resets the attempt counter and schedules the job for immediate execution.

        Raises:
            JobNotFoundError: If the job does not exist.
            DuplicatePendingError: If the subscription has since got an open job.
            JobQueueError: If the job is not in FAILED status.
        """
        now = now or utcnow()

        try:
            job = await self._get_job(job_id, for_update=True)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")

            if job.state != JobState.FAILED:
                raise JobQueueError(f"Can only retry FAILED jobs, current state: {job.state.value}")

            async with self.session.begin_nested():
                apply_requeue(job, now)
                await self.session.flush()

            logger.info(
                "Failed job queued for retry: job_id=%s, subscription_id=%s",
                job_id,
                job.subscription_id,
            )

        except IntegrityError as e:
            raise DuplicatePendingError(job.subscription_id) from e
        except SQLAlchemyError as e:
            logger.error("Failed to retry job %s: %s", job_id, str(e))
            raise JobQueueError(f"Failed to retry job: {e}") from e

    async def latest_scheduled_for(
        self, subscription_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, datetime]:
        ids = list(subscription_ids)
        if not ids:
            return {}

        stmt = (
            select(Job.subscription_id, func.max(Job.scheduled_for))
            .where(Job.subscription_id.in_(ids))
            .group_by(Job.subscription_id)
        )
        result = await self.session.execute(stmt)
        return dict(result.all())

    async def purge_finished(self, older_than: timedelta, now: datetime | None = None) -> int:
        """Delete terminal jobs that finished before the retention window."""
        now = now or utcnow()
        threshold = now - older_than

        try:
            stmt = (
                delete(Job)
                .where(
                    Job.state.in_(TERMINAL_STATES),
                    Job.completed_at < threshold,
                )
                .returning(Job.job_id)
            )
            result = await self.session.execute(stmt)
            purged = len(list(result.scalars().all()))
            if purged:
                logger.info("Purged %d finished jobs older than %s", purged, threshold.isoformat())
            return purged

        except SQLAlchemyError as e:
            logger.error("Failed to purge finished jobs: %s", str(e))
            raise JobQueueError(f"Failed to purge finished jobs: {e}") from e

    async def _get_job(self, job_id: uuid.UUID, *, for_update: bool = False) -> Job | None:
        stmt = select(Job).where(Job.job_id == job_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()


class SqlJobStore(JobStore):
    """JobStore over PostgreSQL: one session and one transaction per operation.

    Example:
        store = SqlJobStore(session_factory, backoff=BackoffPolicy(base_seconds=10))
        job_id = await store.enqueue(subscription_id, payload, boundary)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        backoff: BackoffPolicy | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._session_factory = session_factory
        self.backoff = backoff or BackoffPolicy()
        self.max_attempts = max_attempts

    async def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        async with self._session_factory() as session:
            service = JobQueueService(
                session,
                backoff=self.backoff,
                default_max_attempts=self.max_attempts,
            )
            result = await getattr(service, method)(*args, **kwargs)
            await session.commit()
            return result

    async def enqueue(
        self,
        subscription_id: uuid.UUID,
        payload: dict[str, Any],
        run_at: datetime,
        *,
        now: datetime | None = None,
    ) -> uuid.UUID:
        return await self._call("enqueue", subscription_id, payload, run_at, now=now)

    async def claim(self, worker_id: str, now: datetime | None = None) -> Job | None:
        return await self._call("claim", worker_id, now=now)

    async def heartbeat(
        self, job_id: uuid.UUID, worker_id: str, now: datetime | None = None
    ) -> None:
        await self._call("heartbeat", job_id, worker_id, now=now)

    async def report_success(
        self,
        job_id: uuid.UUID,
        *,
        worker_id: str | None = None,
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        await self._call("report_success", job_id, worker_id=worker_id, result=result, now=now)

    async def report_failure(
        self,
        job_id: uuid.UUID,
        reason: str,
        retryable: bool,
        *,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        return await self._call(
            "report_failure", job_id, reason, retryable, worker_id=worker_id, now=now
        )

    async def release_stale(self, older_than: timedelta, now: datetime | None = None) -> int:
        return await self._call("release_stale", older_than, now=now)

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        return await self._call("get_job", job_id)

    async def count_by_state(self) -> dict[JobState, int]:
        return await self._call("count_by_state")

    async def get_failed_jobs(self, limit: int = 100) -> list[Job]:
        return await self._call("get_failed_jobs", limit)

    async def retry_failed_job(self, job_id: uuid.UUID, now: datetime | None = None) -> None:
        await self._call("retry_failed_job", job_id, now=now)

    async def latest_scheduled_for(
        self, subscription_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, datetime]:
        return await self._call("latest_scheduled_for", list(subscription_ids))

    async def purge_finished(self, older_than: timedelta, now: datetime | None = None) -> int:
        return await self._call("purge_finished", older_than, now=now)
