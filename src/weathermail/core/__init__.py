"""Weathermail core module.

Shared components used across the worker and scheduler:
- Configuration management
- Upstream failure taxonomy
"""

from weathermail.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    Environment,
    QueueSettings,
    SchedulerSettings,
    Settings,
    SMTPSettings,
    WeatherSettings,
    WorkerSettings,
)
from weathermail.core.errors import (
    PermanentUpstreamError,
    TransientUpstreamError,
    UpstreamError,
)
from weathermail.core.settings import (
    clear_settings_cache,
    get_settings,
    get_settings_safe,
)

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "Environment",
    "PermanentUpstreamError",
    "QueueSettings",
    "SMTPSettings",
    "SchedulerSettings",
    "Settings",
    "TransientUpstreamError",
    "UpstreamError",
    "WeatherSettings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
    "get_settings_safe",
]
