"""
tests/test_email.py -- Unit tests for auth/email.py.

Coverage:
  - Provider selection from settings, console fallback
  - SendGrid payload shape and failure handling (mocked requests session)
  - SMTP failure handling (mocked smtplib)
  - Verification and welcome message rendering, HTML escaping
"""

from __future__ import annotations

import smtplib
from unittest.mock import MagicMock, patch

import requests

from auth.email import (
    ConsoleEmailSender,
    SendGridEmailSender,
    SmtpEmailSender,
    build_email_sender,
    send_verification_email,
    send_welcome_email,
)
from tests.conftest import RecordingEmailSender, make_settings


class TestProviderSelection:
    def test_console_default(self) -> None:
        assert isinstance(build_email_sender(make_settings()), ConsoleEmailSender)

    def test_sendgrid_needs_key(self) -> None:
        """SendGrid without an API key falls back to console output."""
        assert isinstance(build_email_sender(make_settings(email_provider="sendgrid")), ConsoleEmailSender)
        sender = build_email_sender(make_settings(email_provider="sendgrid", sendgrid_api_key="SG.key"))
        assert isinstance(sender, SendGridEmailSender)

    def test_smtp(self) -> None:
        sender = build_email_sender(make_settings(email_provider="SMTP", smtp_host="mail.example", smtp_port=2525))
        assert isinstance(sender, SmtpEmailSender)
        assert (sender.host, sender.port) == ("mail.example", 2525)

    def test_unknown_provider(self) -> None:
        assert isinstance(build_email_sender(make_settings(email_provider="pigeon")), ConsoleEmailSender)


class TestSendGrid:
    def test_payload(self) -> None:
        session = MagicMock()
        sender = SendGridEmailSender("SG.key", "noreply@x.io", "X", session=session)
        assert sender.send("a@b.com", "Hello", "<p>hi</p>", "hi") is True

        _, kwargs = session.post.call_args
        assert kwargs["headers"] == {"Authorization": "Bearer SG.key"}
        assert kwargs["timeout"] == 10
        assert kwargs["json"]["personalizations"] == [{"to": [{"email": "a@b.com"}]}]
        assert [c["type"] for c in kwargs["json"]["content"]] == ["text/plain", "text/html"]

    def test_http_error_returns_false(self) -> None:
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("401 Unauthorized")
        sender = SendGridEmailSender("SG.bad", "noreply@x.io", "X", session=session)
        assert sender.send("a@b.com", "Hello", "<p>hi</p>", "hi") is False

    def test_network_error_returns_false(self) -> None:
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("down")
        sender = SendGridEmailSender("SG.key", "noreply@x.io", "X", session=session)
        assert sender.send("a@b.com", "Hello", "<p>hi</p>", "hi") is False


class TestSmtp:
    def test_starttls_and_login(self) -> None:
        sender = SmtpEmailSender("mail.example", 587, "noreply@x.io", "X", username="u", password="p")
        with patch("auth.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            assert sender.send("a@b.com", "Hello", "<p>hi</p>", "hi") is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("u", "p")
        assert server.sendmail.call_args.args[:2] == ("noreply@x.io", ["a@b.com"])

    def test_connection_failure_returns_false(self) -> None:
        sender = SmtpEmailSender("mail.example", 587, "noreply@x.io", "X")
        with patch("auth.email.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy")):
            assert sender.send("a@b.com", "Hello", "<p>hi</p>", "hi") is False


class TestMessages:
    def test_verification_link(self) -> None:
        outbox = RecordingEmailSender()
        assert send_verification_email(outbox, "a@b.com", "Alice", "tok-123", "https://app.example/")
        message = outbox.sent[0]
        assert "https://app.example/auth/verify-email?token=tok-123" in message.text
        assert message.text.startswith("Hi Alice,")
        assert outbox.last_token() == "tok-123"

    def test_name_is_escaped_in_html(self) -> None:
        outbox = RecordingEmailSender()
        send_welcome_email(outbox, "a@b.com", "<img src=x>", "https://app.example")
        assert "<img" not in outbox.sent[0].html
        assert "&lt;img src=x&gt;" in outbox.sent[0].html

    def test_failed_delivery_reported(self) -> None:
        assert send_verification_email(RecordingEmailSender(fail=True), "a@b.com", None, "t", "http://x") is False
