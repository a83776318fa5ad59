"""
auth/email.py -- Outbound transactional email (verification and welcome).

Contract: EmailSender.send(to, subject, html, text) -> bool. Delivery is
best-effort: every implementation logs and returns False on failure instead
of raising, so a mail outage never rolls back account creation. Routes call
send through a worker thread (SMTP and HTTP calls block).

Providers:
  console   -- logs the message (development default, no network)
  sendgrid  -- SendGrid v3 HTTP API via requests
  smtp      -- smtplib with STARTTLS or implicit TLS

Recipient addresses are redacted in log lines to keep PII out of logs.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Protocol

import requests

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authguard.email")

_SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
_TIMEOUT = 10


def _redact(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str, text: str) -> bool: ...


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class ConsoleEmailSender:
    """Logs messages instead of sending them. Used in development and tests."""

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        logger.info("email (console) to=%s subject=%r\n%s", _redact(to), subject, text)
        return True


class SendGridEmailSender:
    def __init__(self, api_key: str, from_email: str, from_name: str, session: requests.Session | None = None) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self._session = session or requests.Session()

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": text}, {"type": "text/html", "value": html}],
        }
        try:
            resp = self._session.post(
                _SENDGRID_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=_TIMEOUT,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("SendGrid delivery to %s failed: %s", _redact(to), exc)
            return False
        logger.info("email sent to=%s subject=%r", _redact(to), subject)
        return True


class SmtpEmailSender:
    def __init__(
        self,
        host: str,
        port: int,
        from_email: str,
        from_name: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.from_email = from_email
        self.from_name = from_name
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=_TIMEOUT) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(self.from_email, [to], msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=_TIMEOUT) as server:
                    self._login(server)
                    server.sendmail(self.from_email, [to], msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.warning("SMTP delivery to %s failed (%s): %s", _redact(to), type(exc).__name__, exc)
            return False
        logger.info("email sent to=%s subject=%r", _redact(to), subject)
        return True

    def _login(self, server: smtplib.SMTP) -> None:
        if self.username and self.password:
            server.login(self.username, self.password)


def build_email_sender(settings: Settings) -> EmailSender:
    """Pick the provider named by EMAIL_PROVIDER, falling back to console."""
    provider = settings.email_provider.lower()
    if provider == "sendgrid" and settings.sendgrid_api_key:
        return SendGridEmailSender(settings.sendgrid_api_key, settings.email_from, settings.email_from_name)
    if provider == "smtp":
        return SmtpEmailSender(
            settings.smtp_host,
            settings.smtp_port,
            settings.email_from,
            settings.email_from_name,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )
    if provider != "console":
        logger.warning("Email provider %r is not configured -- falling back to console output", provider)
    return ConsoleEmailSender()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def send_verification_email(sender: EmailSender, to: str, name: str | None, token: str, app_url: str) -> bool:
    link = f"{app_url.rstrip('/')}/auth/verify-email?token={token}"
    greeting = f"Hi {name}," if name else "Hi,"
    text = (
        f"{greeting}\n\n"
        "Please confirm your email address by opening the link below. "
        "The link expires in 24 hours.\n\n"
        f"{link}\n\n"
        "If you did not create an account, you can ignore this message."
    )
    body = (
        f"<p>{html.escape(greeting)}</p>"
        "<p>Please confirm your email address. The link expires in 24 hours.</p>"
        f'<p><a href="{html.escape(link, quote=True)}">Verify email address</a></p>'
        "<p>If you did not create an account, you can ignore this message.</p>"
    )
    return sender.send(to, "Verify your email address", body, text)


def send_welcome_email(sender: EmailSender, to: str, name: str | None, app_url: str) -> bool:
    greeting = f"Welcome, {name}!" if name else "Welcome!"
    text = f"{greeting}\n\nYour email address is verified. You can now sign in at {app_url}."
    body = (
        f"<p>{html.escape(greeting)}</p>"
        f'<p>Your email address is verified. You can now <a href="{html.escape(app_url, quote=True)}">sign in</a>.</p>'
    )
    return sender.send(to, "Your account is ready", body, text)
