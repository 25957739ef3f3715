"""Weather-email job handler.

For one claimed job this handler:
1. Fetches the current weather for the subscribed city
2. Refreshes the job heartbeat
3. Renders and sends the email to the subscriber

Each upstream call is bounded by ``step_timeout``; a call that runs over is
reported as a TransientUpstreamError so the job is retried with backoff.
The handler never touches job state itself, the worker reports the outcome.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from weathermail.core.errors import PermanentUpstreamError, TransientUpstreamError
from weathermail.services.email import WeatherEmailRenderer, hash_email

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from weathermail.db.models.jobs import Job
    from weathermail.services.email import EmailSender
    from weathermail.services.weather import WeatherClient

logger = logging.getLogger(__name__)


class WeatherEmailHandler:
    """Runs the fetch, render and send steps for one weather-email job.

    Example:
        handler = WeatherEmailHandler(weather_client, email_sender, step_timeout=30)
        result = await handler(job, heartbeat)
    """

    def __init__(
        self,
        weather: WeatherClient,
        email_sender: EmailSender,
        *,
        step_timeout: float = 30.0,
        app_name: str = "Weathermail",
        renderer: WeatherEmailRenderer | None = None,
    ) -> None:
        self.weather = weather
        self.email_sender = email_sender
        self.step_timeout = step_timeout
        self.renderer = renderer or WeatherEmailRenderer(app_name=app_name)

    async def __call__(
        self,
        job: Job,
        heartbeat: Callable[[], Awaitable[None]],
    ) -> dict[str, Any]:
        """Process one job.

        Expected job payload:
            city: City to look up
            recipient_email: Address the report is sent to

        Args:
            job: The claimed job.
            heartbeat: Refreshes the job's claim; raises StaleClaimError if
                the claim was lost.

        Returns:
            Result dict stored on the completed job.

        Raises:
            PermanentUpstreamError: Payload incomplete, unknown city, rejected
                recipient.
            TransientUpstreamError: Timeout or upstream outage.
        """
        payload = job.payload_json or {}
        city = payload.get("city")
        recipient_email = payload.get("recipient_email")
        if not city or not recipient_email:
            msg = f"Job payload is missing city or recipient_email: job_id={job.job_id}"
            raise PermanentUpstreamError(msg)

        report = await self._bounded(self.weather.fetch(city), f"weather lookup for {city}")

        await heartbeat()

        subject, text_body, html_body = self.renderer.render(report)
        message_id = await self._bounded(
            self.email_sender.send(recipient_email, subject, text_body, html_body),
            "email delivery",
        )

        logger.info(
            "Weather email delivered: job_id=%s, city=%s, recipient_hash=%s",
            job.job_id,
            report.city,
            hash_email(recipient_email)[:16],
        )

        return {
            "temperature": report.temperature,
            "description": report.description,
            "message_id": message_id,
        }

    async def _bounded(self, coro: Awaitable[Any], step: str) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.step_timeout)
        except TimeoutError as e:
            msg = f"Timed out after {self.step_timeout}s: {step}"
            raise TransientUpstreamError(msg) from e
