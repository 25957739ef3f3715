"""Weathermail database models.

Importing this package registers every table on ``Base.metadata``.
"""

from weathermail.db.models.base import (
    CLAIMABLE_STATES,
    OPEN_STATES,
    TERMINAL_STATES,
    Base,
    JobState,
)
from weathermail.db.models.jobs import Job, make_job_id
from weathermail.db.models.subscriptions import WeatherSubscription

__all__ = [
    "CLAIMABLE_STATES",
    "OPEN_STATES",
    "TERMINAL_STATES",
    "Base",
    "Job",
    "JobState",
    "WeatherSubscription",
    "make_job_id",
]
