"""Job handlers for the weathermail worker service."""

from weathermail.worker.handlers.weather_email import WeatherEmailHandler

__all__ = ["WeatherEmailHandler"]
