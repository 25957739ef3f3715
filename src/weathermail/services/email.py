"""Email delivery for weather reports.

This module provides the rendering of the weather email (Jinja2 templates
shipped in ``weathermail/templates/email``) and an SMTP sender that
classifies every delivery failure as transient or permanent.

Usage:
    renderer = WeatherEmailRenderer(app_name="Weathermail")
    subject, text_body, html_body = renderer.render(report)

    sender = EmailSender(settings.smtp)
    message_id = await sender.send("a@example.com", subject, text_body, html_body)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
import smtplib
import ssl
from datetime import UTC, datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import format_datetime, parseaddr
from typing import TYPE_CHECKING

from jinja2 import Environment, PackageLoader, select_autoescape

from weathermail.core.errors import PermanentUpstreamError, TransientUpstreamError

if TYPE_CHECKING:
    from weathermail.core.config import SMTPSettings
    from weathermail.services.weather import WeatherReport

logger = logging.getLogger(__name__)

SERVICE_NAME = "email"

# Template version for tracking what the subscriber received
TEMPLATE_VERSION = "2026.1.0"


def hash_email(email: str) -> str:
    """SHA-256 of the normalized address, so logs never carry the address itself."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


def validate_recipient(recipient_email: str) -> str:
    """Return the bare address or raise PermanentUpstreamError if malformed."""
    _, address = parseaddr(recipient_email or "")
    local, sep, domain = address.rpartition("@")
    if not sep or not local or "." not in domain or any(c.isspace() for c in address):
        msg = f"Malformed recipient address (hash={hash_email(recipient_email or '')[:16]})"
        raise PermanentUpstreamError(msg, service=SERVICE_NAME)
    return address


class WeatherEmailRenderer:
    """Renders the subject, plain-text and HTML bodies of a weather email."""

    def __init__(self, app_name: str = "Weathermail") -> None:
        self.app_name = app_name
        self._env = Environment(
            loader=PackageLoader("weathermail", "templates/email"),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def render(
        self,
        report: WeatherReport,
        *,
        generated_at: datetime | None = None,
    ) -> tuple[str, str, str]:
        """Render the email for one weather report.

        Returns:
            Tuple of (subject, text_body, html_body).
        """
        generated_at = generated_at or datetime.now(UTC)
        context = {
            "app_name": self.app_name,
            "report": report,
            "generated_at": generated_at.strftime("%Y-%m-%d %H:%M UTC"),
            "template_version": TEMPLATE_VERSION,
        }

        text_body = self._env.get_template("weather.txt").render(**context)
        html_body = self._env.get_template("weather.html").render(**context)

        return self.subject(report), text_body, html_body

    def subject(self, report: WeatherReport) -> str:
        return (
            f"Weather in {report.city}: {report.description}, "
            f"{report.temperature:.0f}{report.temperature_unit}"
        )


class EmailSender:
    """SMTP sender for weather emails.

    smtplib is blocking, so each send runs in the event loop's default
    executor. Failures are raised as TransientUpstreamError or
    PermanentUpstreamError.
    """

    def __init__(self, smtp_settings: SMTPSettings) -> None:
        self.smtp_settings = smtp_settings

    async def send(
        self,
        recipient_email: str,
        subject: str,
        text_body: str,
        html_body: str | None = None,
    ) -> str:
        """Send one email.

        Returns:
            The Message-ID header of the sent email.

        Raises:
            PermanentUpstreamError: Malformed or rejected recipient, 5xx
                response, authentication failure.
            TransientUpstreamError: Connection failure, timeout, 4xx response.
        """
        address = validate_recipient(recipient_email)
        message_id = f"<{secrets.token_hex(16)}@{self._get_domain()}>"
        msg = self._build_message(address, subject, text_body, html_body, message_id)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send_sync, address, msg)

        logger.info(
            "Weather email sent: recipient_hash=%s, message_id=%s",
            hash_email(address)[:16],
            message_id,
        )
        return message_id

    def _build_message(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: str | None,
        message_id: str,
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.smtp_settings.from_name} <{self.smtp_settings.from_address}>"
        msg["To"] = to_email
        msg["Date"] = format_datetime(datetime.now(UTC))
        msg["Message-ID"] = message_id

        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        if html_body is not None:
            msg.attach(MIMEText(html_body, "html", "utf-8"))
        return msg

    def _send_sync(self, to_email: str, msg: MIMEMultipart) -> None:
        """Deliver ``msg`` over SMTP, translating smtplib failures."""
        try:
            with self._connect() as server:
                if self.smtp_settings.username and self.smtp_settings.password:
                    server.login(
                        self.smtp_settings.username,
                        self.smtp_settings.password.get_secret_value(),
                    )
                server.sendmail(self.smtp_settings.from_address, [to_email], msg.as_string())

        except smtplib.SMTPRecipientsRefused as e:
            codes = [code for code, _ in e.recipients.values()]
            error_cls = (
                TransientUpstreamError
                if codes and all(400 <= code < 500 for code in codes)
                else PermanentUpstreamError
            )
            raise error_cls(
                f"Recipient refused by SMTP server: {codes}", service=SERVICE_NAME
            ) from e
        except smtplib.SMTPAuthenticationError as e:
            raise PermanentUpstreamError(
                f"SMTP authentication failed ({e.smtp_code})", service=SERVICE_NAME
            ) from e
        except (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError) as e:
            raise TransientUpstreamError(
                f"SMTP connection failed: {e}", service=SERVICE_NAME
            ) from e
        except smtplib.SMTPResponseException as e:
            error_cls = PermanentUpstreamError if e.smtp_code >= 500 else TransientUpstreamError
            raise error_cls(
                f"SMTP server replied {e.smtp_code}: {_decode(e.smtp_error)}",
                service=SERVICE_NAME,
            ) from e
        except smtplib.SMTPException as e:
            raise TransientUpstreamError(f"SMTP error: {e}", service=SERVICE_NAME) from e
        except OSError as e:
            # Socket timeouts, refused connections, DNS failures
            raise TransientUpstreamError(
                f"SMTP transport error: {e}", service=SERVICE_NAME
            ) from e

    def _connect(self) -> smtplib.SMTP:
        if self.smtp_settings.use_ssl:
            # Implicit TLS (port 465)
            return smtplib.SMTP_SSL(
                self.smtp_settings.host,
                self.smtp_settings.port,
                timeout=self.smtp_settings.timeout,
                context=ssl.create_default_context(),
            )

        server = smtplib.SMTP(
            self.smtp_settings.host,
            self.smtp_settings.port,
            timeout=self.smtp_settings.timeout,
        )
        if self.smtp_settings.use_tls:
            try:
                server.starttls(context=ssl.create_default_context())
            except Exception:
                server.close()
                raise
        return server

    def _get_domain(self) -> str:
        _, _, domain = self.smtp_settings.from_address.rpartition("@")
        return domain or "weathermail.local"


def _decode(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)
