"""Weathermail worker service.

Background processing for weather-email subscriptions:
- Scheduler: enqueues one run per active subscription per cadence window
- Worker pool: claims runs, fetches the weather, sends the email, retries
  transient failures with backoff and dead-letters the rest

Usage:
    # Run as module
    python -m weathermail.worker

    # Or through the console script
    weathermail-worker
"""

from weathermail.worker.main import Worker, WorkerConfig, WorkerPool, run

__all__ = ["Worker", "WorkerConfig", "WorkerPool", "run"]
