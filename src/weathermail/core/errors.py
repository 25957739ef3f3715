"""Failure taxonomy shared by the upstream capabilities.

Both the weather lookup and the email sender raise one of the two concrete
classes below. The worker only looks at ``retryable`` to decide whether a
job is rescheduled with backoff or dead-lettered immediately.
"""

from __future__ import annotations


class UpstreamError(Exception):
    """Base class for failures of a third-party call.

    Attributes:
        retryable: Whether trying again later may succeed.
        service: Name of the upstream that failed ("weather", "email").
    """

    retryable: bool = True

    def __init__(self, message: str, service: str | None = None) -> None:
        self.message = message
        self.service = service
        super().__init__(message)


class TransientUpstreamError(UpstreamError):
    """Timeout, connection failure, or server-side fault upstream."""

    retryable = True


class PermanentUpstreamError(UpstreamError):
    """Client-side rejection upstream (unknown city, bad recipient)."""

    retryable = False
