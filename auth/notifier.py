"""
auth/notifier.py -- Out-of-band delivery of one-time passcodes.

Delivery is fire-and-forget: the session manager hands the OTP over and moves
on. A failed send raises NotificationError, which the session manager logs
without undoing the OTP record -- the user can simply ask for a new code.

EmailNotifier renders the Jinja2 templates in auth/templates/email/ and sends
them over SMTP. With no SMTP host configured it runs in dev mode and writes a
log line instead, so local development needs no mail server. The OTP itself
is never logged in either mode.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Protocol

from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from core.config import Settings

logger = logging.getLogger("authservice.notifier")

_TEMPLATE_DIR = Path(__file__).parent / "templates" / "email"


class NotificationError(Exception):
    """An OTP message could not be rendered or delivered."""


class Notifier(Protocol):
    def send_registration_otp(self, email: str, otp: str, expiry_minutes: int) -> None: ...

    def send_password_reset_otp(self, email: str, otp: str, expiry_minutes: int) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailNotifier:
    """SMTP-backed Notifier.

    Usage:
        notifier = EmailNotifier.from_settings(get_settings())
        notifier.send_registration_otp("ann@x.com", "123456", 5)
    """

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        from_name: str = "",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self._templates = Environment(
            loader=FileSystemLoader(str(_TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> EmailNotifier:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send_registration_otp(self, email: str, otp: str, expiry_minutes: int) -> None:
        html = self._render("otp.html", otp=otp, expiry_minutes=expiry_minutes)
        self._send(email, "Your Verification Code", html, context="registration")

    def send_password_reset_otp(self, email: str, otp: str, expiry_minutes: int) -> None:
        html = self._render("reset_password.html", otp=otp, expiry_minutes=expiry_minutes)
        self._send(email, "Your Password Reset Code", html, context="password-reset")

    def _render(self, template_name: str, **context) -> str:
        try:
            return self._templates.get_template(template_name).render(**context)
        except TemplateError as exc:
            raise NotificationError(f"Could not render {template_name}") from exc

    def _send(self, to_email: str, subject: str, html_body: str, context: str) -> None:
        if not self.is_configured:
            logger.info("Email dev mode: %s message '%s' for %s not sent", context, subject, redact_email(to_email))
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>" if self.from_name else self.from_email
        msg["To"] = to_email
        msg["X-OTP-Context"] = context
        msg.attach(MIMEText(html_body, "html"))

        ssl_context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=ssl_context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, [to_email], msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=ssl_context, timeout=30) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, [to_email], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"SMTP delivery to {redact_email(to_email)} failed") from exc
        logger.info("Sent %s email to %s", context, redact_email(to_email))
