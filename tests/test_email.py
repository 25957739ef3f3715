"""Tests for weather email rendering and SMTP delivery.

smtplib is patched; no SMTP server is contacted.
"""

import dataclasses
import email
import smtplib
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
from pydantic import SecretStr

from tests.factories import create_weather_report
from weathermail.core.config import SMTPSettings
from weathermail.core.errors import PermanentUpstreamError, TransientUpstreamError
from weathermail.services.email import (
    EmailSender,
    WeatherEmailRenderer,
    hash_email,
    validate_recipient,
)


@pytest.fixture
def smtp_settings():
    return SMTPSettings(host="smtp.test", port=1025, from_address="weather@weathermail.test")


@pytest.fixture
def mock_smtp():
    """Patch smtplib.SMTP so ``with SMTP(...) as server`` yields the same mock."""
    with patch("weathermail.services.email.smtplib.SMTP") as smtp_cls:
        server = smtp_cls.return_value
        server.__enter__.return_value = server
        server.__exit__.return_value = False
        yield smtp_cls


async def send(sender, recipient="a@x.com"):
    return await sender.send(recipient, "Weather in Paris", "text body", "<p>html body</p>")


class TestRecipientValidation:
    """Tests for validate_recipient."""

    def test_valid_address(self):
        assert validate_recipient("a@x.com") == "a@x.com"

    def test_display_name_is_stripped(self):
        assert validate_recipient("Alice <alice@example.org>") == "alice@example.org"

    @pytest.mark.parametrize("address", ["", "alice", "alice@", "@example.org", "alice@localhost"])
    def test_malformed_address(self, address):
        with pytest.raises(PermanentUpstreamError, match="Malformed recipient"):
            validate_recipient(address)

    def test_hash_is_normalized(self):
        assert hash_email(" A@X.com ") == hash_email("a@x.com")
        assert len(hash_email("a@x.com")) == 64


class TestEmailSender:
    """Tests for successful delivery."""

    @pytest.mark.asyncio
    async def test_send_plain_smtp(self, smtp_settings, mock_smtp):
        message_id = await send(EmailSender(smtp_settings))

        mock_smtp.assert_called_once_with("smtp.test", 1025, timeout=30)
        server = mock_smtp.return_value
        server.starttls.assert_not_called()
        server.login.assert_not_called()
        from_addr, to_addrs, raw = server.sendmail.call_args[0]
        assert from_addr == "weather@weathermail.test"
        assert to_addrs == ["a@x.com"]

        msg = email.message_from_string(raw)
        assert msg["Message-ID"] == message_id
        assert msg["To"] == "a@x.com"
        assert msg["From"] == "Weathermail <weather@weathermail.test>"
        assert msg["Subject"] == "Weather in Paris"
        assert [part.get_content_type() for part in msg.get_payload()] == [
            "text/plain",
            "text/html",
        ]

    @pytest.mark.asyncio
    async def test_message_id_format(self, smtp_settings, mock_smtp):
        message_id = await send(EmailSender(smtp_settings))

        assert message_id.startswith("<")
        assert message_id.endswith("@weathermail.test>")

    @pytest.mark.asyncio
    async def test_text_only(self, smtp_settings, mock_smtp):
        await EmailSender(smtp_settings).send("a@x.com", "Subject", "text only")

        raw = mock_smtp.return_value.sendmail.call_args[0][2]
        parts = email.message_from_string(raw).get_payload()
        assert [part.get_content_type() for part in parts] == ["text/plain"]

    @pytest.mark.asyncio
    async def test_starttls_and_login(self, mock_smtp):
        settings = SMTPSettings(
            host="smtp.test",
            port=587,
            use_tls=True,
            username="mailer",
            password=SecretStr("secret"),
        )

        await send(EmailSender(settings))

        server = mock_smtp.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")

    @pytest.mark.asyncio
    async def test_implicit_tls(self):
        settings = SMTPSettings(host="smtp.test", port=465, use_ssl=True)

        with patch("weathermail.services.email.smtplib.SMTP_SSL") as smtp_ssl:
            server = smtp_ssl.return_value
            server.__enter__.return_value = server
            server.__exit__.return_value = False
            await send(EmailSender(settings))

        assert smtp_ssl.call_args[0] == ("smtp.test", 465)
        server.sendmail.assert_called_once()


class TestSendFailures:
    """Tests for SMTP failure classification."""

    @pytest.mark.asyncio
    async def test_malformed_recipient_never_connects(self, smtp_settings, mock_smtp):
        with pytest.raises(PermanentUpstreamError):
            await send(EmailSender(smtp_settings), recipient="not-an-address")

        mock_smtp.assert_not_called()

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (smtplib.SMTPRecipientsRefused({"a@x.com": (550, b"No such user")}), PermanentUpstreamError),
            (smtplib.SMTPRecipientsRefused({"a@x.com": (452, b"Mailbox full")}), TransientUpstreamError),
            (smtplib.SMTPSenderRefused(553, b"Sender rejected", "weather@weathermail.test"), PermanentUpstreamError),
            (smtplib.SMTPDataError(554, b"Message rejected as spam"), PermanentUpstreamError),
            (smtplib.SMTPDataError(451, b"Try again later"), TransientUpstreamError),
            (smtplib.SMTPServerDisconnected("Connection unexpectedly closed"), TransientUpstreamError),
            (TimeoutError("timed out"), TransientUpstreamError),
        ],
    )
    @pytest.mark.asyncio
    async def test_sendmail_errors(self, smtp_settings, mock_smtp, error, expected):
        mock_smtp.return_value.sendmail.side_effect = error

        with pytest.raises(expected) as exc_info:
            await send(EmailSender(smtp_settings))

        assert exc_info.value.service == "email"
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_authentication_failure_is_permanent(self, mock_smtp):
        settings = SMTPSettings(host="smtp.test", username="mailer", password=SecretStr("wrong"))
        mock_smtp.return_value.login.side_effect = smtplib.SMTPAuthenticationError(
            535, b"Authentication credentials invalid"
        )

        with pytest.raises(PermanentUpstreamError, match="authentication failed"):
            await send(EmailSender(settings))

    @pytest.mark.parametrize(
        "error",
        [
            smtplib.SMTPConnectError(421, b"Too many connections"),
            ConnectionRefusedError(111, "Connection refused"),
            OSError("Name or service not known"),
        ],
    )
    @pytest.mark.asyncio
    async def test_connection_errors_are_transient(self, smtp_settings, mock_smtp, error):
        mock_smtp.side_effect = error

        with pytest.raises(TransientUpstreamError):
            await send(EmailSender(smtp_settings))

    @pytest.mark.asyncio
    async def test_starttls_failure_closes_connection(self, mock_smtp):
        settings = SMTPSettings(host="smtp.test", port=587, use_tls=True)
        server = mock_smtp.return_value
        server.starttls.side_effect = smtplib.SMTPNotSupportedError(
            "STARTTLS extension not supported by server."
        )

        with pytest.raises(TransientUpstreamError):
            await send(EmailSender(settings))

        server.close.assert_called_once()
        server.sendmail.assert_not_called()


class TestWeatherEmailRenderer:
    """Tests for the Jinja2 weather templates."""

    @pytest.fixture
    def renderer(self):
        return WeatherEmailRenderer(app_name="Weathermail")

    def test_render_subject_and_bodies(self, renderer):
        report = create_weather_report()
        generated_at = datetime(2026, 10, 19, 7, 0, tzinfo=UTC)

        subject, text_body, html_body = renderer.render(report, generated_at=generated_at)

        assert subject == "Weather in Paris: light rain, 18°C"
        assert "Current weather in Paris" in text_body
        assert "Temperature: 18.4°C (feels like 17.2°C)" in text_body
        assert "Humidity:    72%" in text_body
        assert "2026-10-19 07:00 UTC" in text_body
        assert "https://openweathermap.org/img/wn/10d@2x.png" in html_body
        assert "<strong>18.4°C</strong>" in html_body

    def test_html_is_escaped(self, renderer):
        report = create_weather_report(city="<script>alert(1)</script>")

        _, text_body, html_body = renderer.render(report)

        assert "<script>" not in html_body
        assert "&lt;script&gt;" in html_body
        # Plain text is not HTML-escaped
        assert "<script>" in text_body

    def test_imperial_units(self, renderer):
        report = dataclasses.replace(create_weather_report(temperature=64.9), units="imperial")

        subject, text_body, _ = renderer.render(report)

        assert subject == "Weather in Paris: light rain, 65°F"
        assert "4.6 mph" in text_body
