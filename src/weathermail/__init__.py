"""Weathermail - scheduled weather emails.

Turns each weather-email subscription into a recurring job on a
PostgreSQL-backed queue, processed by a pool of workers that fetch the
current weather and email it to the subscriber.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
