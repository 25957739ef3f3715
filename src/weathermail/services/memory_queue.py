"""In-process JobStore backend.

A mutex-guarded dictionary of Job objects with the same contract as
SqlJobStore. Suitable for single-process deployments, local runs and tests.
Jobs are transient ORM instances; nothing is persisted.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from weathermail.db.models.base import (
    CLAIMABLE_STATES,
    TERMINAL_STATES,
    JobState,
)
from weathermail.services.backoff import BackoffPolicy
from weathermail.services.job_queue import (
    DEFAULT_MAX_ATTEMPTS,
    DuplicatePendingError,
    JobNotFoundError,
    JobQueueError,
    JobStore,
    StaleClaimError,
    apply_claim,
    apply_failure,
    apply_release,
    apply_requeue,
    apply_success,
    check_owner,
    new_job,
    utcnow,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable
    from datetime import datetime, timedelta

    from weathermail.db.models.jobs import Job

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
    """JobStore kept in process memory behind an asyncio.Lock.

    The lock serializes every read-modify-write, so claim() can hand a job
    to at most one caller and enqueue() can never open two runs for one
    subscription.
    """

    def __init__(
        self,
        backoff: BackoffPolicy | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.backoff = backoff or BackoffPolicy()
        self.max_attempts = max_attempts
        self._jobs: dict[uuid.UUID, Job] = {}
        # subscription_id -> job_id of its open run
        self._open: dict[uuid.UUID, uuid.UUID] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    async def enqueue(
        self,
        subscription_id: uuid.UUID,
        payload: dict[str, Any],
        run_at: datetime,
        *,
        now: datetime | None = None,
    ) -> uuid.UUID:
        now = now or utcnow()
        async with self._lock:
            if subscription_id in self._open:
                raise DuplicatePendingError(subscription_id)

            job = new_job(subscription_id, payload, run_at, self.max_attempts, now)
            if job.job_id in self._jobs:
                raise DuplicatePendingError(
                    subscription_id,
                    f"Run already exists for subscription {subscription_id} at {run_at.isoformat()}",
                )

            self._jobs[job.job_id] = job
            self._open[subscription_id] = job.job_id

        logger.info(
            "Job enqueued: job_id=%s, subscription_id=%s, run_at=%s",
            job.job_id,
            subscription_id,
            run_at.isoformat(),
        )
        return job.job_id

    async def claim(self, worker_id: str, now: datetime | None = None) -> Job | None:
        now = now or utcnow()
        async with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.state in CLAIMABLE_STATES and job.next_run_at <= now
            ]
            if not eligible:
                return None

            job = min(eligible, key=lambda j: (j.next_run_at, j.created_at))
            apply_claim(job, worker_id, now)

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, subscription_id=%s, attempt=%d/%d",
            job.job_id,
            worker_id,
            job.subscription_id,
            job.attempts + 1,
            job.max_attempts,
        )
        return job

    async def heartbeat(
        self, job_id: uuid.UUID, worker_id: str, now: datetime | None = None
    ) -> None:
        now = now or utcnow()
        async with self._lock:
            job = self._require(job_id)
            if job.state != JobState.ACTIVE or job.locked_by != worker_id:
                msg = f"Job {job_id} is no longer held by {worker_id}"
                raise StaleClaimError(msg)
            job.heartbeat_at = now
            job.updated_at = now

    async def report_success(
        self,
        job_id: uuid.UUID,
        *,
        worker_id: str | None = None,
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> None:
        now = now or utcnow()
        async with self._lock:
            job = self._require(job_id)
            check_owner(job, worker_id)
            apply_success(job, result, now)
            self._open.pop(job.subscription_id, None)

        logger.info(
            "Job completed: job_id=%s, subscription_id=%s, duration_ms=%s",
            job_id,
            job.subscription_id,
            job.duration_ms,
        )

    async def report_failure(
        self,
        job_id: uuid.UUID,
        reason: str,
        retryable: bool,
        *,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        async with self._lock:
            job = self._require(job_id)
            check_owner(job, worker_id)
            will_retry = apply_failure(job, reason, retryable, self.backoff, now)
            if not will_retry:
                self._open.pop(job.subscription_id, None)
            return will_retry

    async def release_stale(self, older_than: timedelta, now: datetime | None = None) -> int:
        now = now or utcnow()
        threshold = now - older_than
        released = []
        async with self._lock:
            for job in self._jobs.values():
                if (
                    job.state == JobState.ACTIVE
                    and job.heartbeat_at is not None
                    and job.heartbeat_at < threshold
                ):
                    apply_release(job, now)
                    released.append(job.job_id)

        if released:
            logger.warning("Released %d stale jobs: %s", len(released), released)
        return len(released)

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        return self._jobs.get(job_id)

    async def count_by_state(self) -> dict[JobState, int]:
        counts = {state: 0 for state in JobState}
        for job in self._jobs.values():
            counts[job.state] += 1
        return counts

    async def get_failed_jobs(self, limit: int = 100) -> list[Job]:
        failed = [job for job in self._jobs.values() if job.state == JobState.FAILED]
        failed.sort(key=lambda j: j.completed_at, reverse=True)
        return failed[:limit]

    async def retry_failed_job(self, job_id: uuid.UUID, now: datetime | None = None) -> None:
        now = now or utcnow()
        async with self._lock:
            job = self._require(job_id)
            if job.state != JobState.FAILED:
                raise JobQueueError(f"Can only retry FAILED jobs, current state: {job.state.value}")
            if job.subscription_id in self._open:
                raise DuplicatePendingError(job.subscription_id)

            apply_requeue(job, now)
            self._open[job.subscription_id] = job.job_id

        logger.info(
            "Failed job queued for retry: job_id=%s, subscription_id=%s",
            job_id,
            job.subscription_id,
        )

    async def latest_scheduled_for(
        self, subscription_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, datetime]:
        wanted = set(subscription_ids)
        latest: dict[uuid.UUID, datetime] = {}
        for job in self._jobs.values():
            if job.subscription_id not in wanted:
                continue
            current = latest.get(job.subscription_id)
            if current is None or job.scheduled_for > current:
                latest[job.subscription_id] = job.scheduled_for
        return latest

    async def purge_finished(self, older_than: timedelta, now: datetime | None = None) -> int:
        now = now or utcnow()
        threshold = now - older_than
        async with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state in TERMINAL_STATES
                and job.completed_at is not None
                and job.completed_at < threshold
            ]
            for job_id in expired:
                del self._jobs[job_id]

        if expired:
            logger.info("Purged %d finished jobs older than %s", len(expired), threshold.isoformat())
        return len(expired)

    def _require(self, job_id: uuid.UUID) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

