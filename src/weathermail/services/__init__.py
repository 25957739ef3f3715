"""Weathermail service layer.

This package contains the job store backends and the upstream integrations:
- JobStore: contract of the durable job queue
- SqlJobStore / JobQueueService: PostgreSQL backend (SKIP LOCKED claiming)
- InMemoryJobStore: single-process backend
- BackoffPolicy: retry delays with jitter
- SubscriptionRegistry: read-only view of active subscriptions
- WeatherClient: OpenWeatherMap current-weather lookup
- EmailSender / WeatherEmailRenderer: SMTP delivery of the weather email
"""

from weathermail.services.backoff import BackoffPolicy
from weathermail.services.email import EmailSender, WeatherEmailRenderer
from weathermail.services.job_queue import (
    DuplicatePendingError,
    JobNotFoundError,
    JobQueueError,
    JobQueueService,
    JobStore,
    SqlJobStore,
    StaleClaimError,
)
from weathermail.services.memory_queue import InMemoryJobStore
from weathermail.services.subscriptions import (
    RegistryError,
    SqlSubscriptionRegistry,
    StaticSubscriptionRegistry,
    Subscription,
    SubscriptionRegistry,
)
from weathermail.services.weather import WeatherClient, WeatherReport

__all__ = [
    "BackoffPolicy",
    "DuplicatePendingError",
    "EmailSender",
    "InMemoryJobStore",
    "JobNotFoundError",
    "JobQueueError",
    "JobQueueService",
    "JobStore",
    "RegistryError",
    "SqlJobStore",
    "SqlSubscriptionRegistry",
    "StaleClaimError",
    "StaticSubscriptionRegistry",
    "Subscription",
    "SubscriptionRegistry",
    "WeatherClient",
    "WeatherEmailRenderer",
    "WeatherReport",
]
