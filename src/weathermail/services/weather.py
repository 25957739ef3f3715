"""Current-weather lookup against the OpenWeatherMap API.

The client turns every failure into one of the two upstream error classes
so the worker can decide between retry and dead-letter without knowing
anything about HTTP:

- timeouts, connection errors, 408, 429 and 5xx -> TransientUpstreamError
- unknown city (404), other 4xx, malformed body -> PermanentUpstreamError

Example usage:
    async with WeatherClient(settings.weather) as client:
        report = await client.fetch("Paris")
        print(report.temperature, report.description)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from weathermail.core.errors import PermanentUpstreamError, TransientUpstreamError

if TYPE_CHECKING:
    from weathermail.core.config import WeatherSettings

logger = logging.getLogger(__name__)

SERVICE_NAME = "weather"

# Client errors that are worth retrying
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True, slots=True)
class WeatherReport:
    """Current conditions for one city.

    Attributes:
        city: City name as resolved by the API.
        temperature: Air temperature in the configured units.
        feels_like: Perceived temperature in the configured units.
        description: Human-readable condition (e.g. "light rain").
        humidity: Relative humidity in percent.
        wind_speed: Wind speed (m/s for metric, mph for imperial).
        icon: API icon code (e.g. "10d").
        units: Unit system the values are expressed in.
    """

    city: str
    temperature: float
    feels_like: float
    description: str
    humidity: int
    wind_speed: float
    icon: str
    units: str = "metric"

    @property
    def icon_url(self) -> str:
        return f"https://openweathermap.org/img/wn/{self.icon}@2x.png"

    @property
    def temperature_unit(self) -> str:
        return {"metric": "°C", "imperial": "°F"}.get(self.units, "K")

    @property
    def wind_unit(self) -> str:
        return "mph" if self.units == "imperial" else "m/s"


class WeatherClient:
    """Async client for the OpenWeatherMap current-weather endpoint.

    Must be used as an async context manager; the underlying
    httpx.AsyncClient is shared by every fetch made inside the context.
    """

    def __init__(
        self,
        settings: WeatherSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Weather API configuration.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> WeatherClient:
        self._client = httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=self._settings.timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "WeatherClient must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    async def fetch(self, city: str) -> WeatherReport:
        """Fetch the current weather for ``city``.

        Raises:
            PermanentUpstreamError: Empty or unknown city, rejected request,
                or a response that cannot be parsed.
            TransientUpstreamError: Timeout, connection failure, throttling
                or server-side fault.
        """
        if not city or not city.strip():
            raise PermanentUpstreamError("City is required", service=SERVICE_NAME)

        client = self._get_client()
        params = {
            "q": city.strip(),
            "appid": self._settings.api_key.get_secret_value(),
            "units": self._settings.units,
        }

        try:
            response = await client.get("/weather", params=params)
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(
                f"Weather request timed out for {city}: {e}", service=SERVICE_NAME
            ) from e
        except httpx.TransportError as e:
            raise TransientUpstreamError(
                f"Cannot reach weather API for {city}: {e}", service=SERVICE_NAME
            ) from e

        self._raise_for_status(response, city)

        try:
            report = self._parse(response.json(), city)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise PermanentUpstreamError(
                f"Malformed weather response for {city}: {e}", service=SERVICE_NAME
            ) from e

        logger.debug(
            "Weather fetched: city=%s, temperature=%s, description=%s",
            report.city,
            report.temperature,
            report.description,
        )
        return report

    def _raise_for_status(self, response: httpx.Response, city: str) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = _error_message(response)
        if status >= 500 or status in RETRYABLE_STATUS_CODES:
            raise TransientUpstreamError(
                f"Weather API returned {status} for {city}: {detail}", service=SERVICE_NAME
            )
        if status == 404:
            raise PermanentUpstreamError(f"Unknown city: {city}", service=SERVICE_NAME)
        raise PermanentUpstreamError(
            f"Weather API rejected request for {city} ({status}): {detail}",
            service=SERVICE_NAME,
        )

    def _parse(self, data: dict[str, Any], city: str) -> WeatherReport:
        main = data["main"]
        condition = data["weather"][0]
        return WeatherReport(
            city=data.get("name") or city,
            temperature=float(main["temp"]),
            feels_like=float(main["feels_like"]),
            description=str(condition["description"]),
            humidity=int(main["humidity"]),
            wind_speed=float(data["wind"]["speed"]),
            icon=str(condition["icon"]),
            units=self._settings.units,
        )


def _error_message(response: httpx.Response) -> str:
    """Best-effort extraction of the API's error message."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and "message" in body:
        return str(body["message"])
    return response.text[:200]
