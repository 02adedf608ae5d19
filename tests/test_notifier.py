"""
tests/test_notifier.py -- EmailNotifier rendering, dev mode and SMTP failures.

smtplib.SMTP is patched; nothing leaves the process.
"""

from __future__ import annotations

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from auth.notifier import EmailNotifier, NotificationError, redact_email


def _configured() -> EmailNotifier:
    return EmailNotifier(
        smtp_host="smtp.test",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="pw",
        from_email="noreply@test",
        from_name="Virtual Vanguards",
    )


def test_redact_email():
    assert redact_email("annabel@x.com") == "an***@x.com"
    assert redact_email("no-at-sign") == "redacted"


def test_dev_mode_does_not_send():
    notifier = EmailNotifier()
    assert not notifier.is_configured
    with patch("auth.notifier.smtplib.SMTP") as smtp:
        notifier.send_registration_otp("ann@x.com", "123456", 5)
    smtp.assert_not_called()


def test_otp_is_never_logged_in_dev_mode(caplog):
    with caplog.at_level("INFO", logger="authservice.notifier"):
        EmailNotifier().send_password_reset_otp("ann@x.com", "987654", 5)
    assert "987654" not in caplog.text
    assert "ann@x.com" not in caplog.text


def test_registration_email_is_sent_with_otp():
    notifier = _configured()
    server = MagicMock()
    with patch("auth.notifier.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value = server
        notifier.send_registration_otp("ann@x.com", "123456", 5)

    smtp.assert_called_once_with("smtp.test", 587, timeout=30)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer", "pw")
    from_addr, to_addrs, raw = server.sendmail.call_args.args
    assert from_addr == "noreply@test"
    assert to_addrs == ["ann@x.com"]
    assert "Your Verification Code" in raw
    assert "X-OTP-Context: registration" in raw


def test_templates_render_code_and_expiry():
    notifier = _configured()
    html = notifier._render("reset_password.html", otp="424242", expiry_minutes=5)
    assert "424242" in html
    assert "5" in html


def test_smtp_failure_raises_notification_error():
    notifier = _configured()
    with patch("auth.notifier.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value.sendmail.side_effect = smtplib.SMTPException("boom")
        with pytest.raises(NotificationError):
            notifier.send_password_reset_otp("ann@x.com", "123456", 5)


def test_connection_refused_raises_notification_error():
    notifier = _configured()
    with patch("auth.notifier.smtplib.SMTP", side_effect=ConnectionRefusedError()):
        with pytest.raises(NotificationError):
            notifier.send_registration_otp("ann@x.com", "123456", 5)
