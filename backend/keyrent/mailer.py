"""
Outbound email for notifications.

Three transports: Brevo's transactional API, plain SMTP and a console logger
for development. `send_email` raises `EmailSendError` on any delivery problem;
callers that treat email as best-effort catch it themselves.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Callable

import requests

from keyrent.config import (
    brevo_api_key,
    brevo_sender_name,
    email_backend,
    is_local_dev,
    sender_email,
    smtp_credentials,
    smtp_host,
    smtp_port,
)

logger = logging.getLogger(__name__)

_BREVO_URL = "https://api.brevo.com/v3/smtp/email"
_TIMEOUT_SECONDS = 15


class EmailSendError(RuntimeError):
    pass


def _require_sender() -> str:
    sender = sender_email()
    if not sender:
        raise EmailSendError("No sender address; set SMTP_FROM or BREVO_FROM")
    return sender


def _console(to_email: str, subject: str, text: str) -> None:
    logger.warning("EMAIL_BACKEND=console: to=%s subject=%s\n%s", to_email, subject, text)


def _brevo(to_email: str, subject: str, text: str) -> None:
    key = brevo_api_key()
    if not key:
        raise EmailSendError("BREVO_API_KEY not configured")
    body = {
        "sender": {"email": _require_sender(), "name": brevo_sender_name()},
        "to": [{"email": to_email}],
        "subject": subject,
        "textContent": text,
    }
    try:
        resp = requests.post(
            _BREVO_URL,
            json=body,
            headers={"api-key": key, "Accept": "application/json"},
            timeout=_TIMEOUT_SECONDS,
        )
    except requests.exceptions.RequestException as e:
        raise EmailSendError(f"Brevo unreachable: {e}") from e
    if resp.status_code >= 300:
        raise EmailSendError(f"Brevo rejected the email (HTTP {resp.status_code}): {resp.text[:300]}")


def _smtp(to_email: str, subject: str, text: str) -> None:
    host = smtp_host()
    if not host:
        raise EmailSendError("SMTP_HOST not configured")
    msg = EmailMessage()
    msg["From"] = _require_sender()
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(text)

    port = smtp_port()
    user, password = smtp_credentials()
    tls = ssl.create_default_context()
    if port == 465:
        conn = smtplib.SMTP_SSL(host, port, timeout=_TIMEOUT_SECONDS, context=tls)
    else:
        conn = smtplib.SMTP(host, port, timeout=_TIMEOUT_SECONDS)
    with conn:
        if port != 465:
            conn.ehlo()
            if conn.has_extn("starttls"):
                conn.starttls(context=tls)
                conn.ehlo()
        if user and password:
            conn.login(user, password)
        conn.send_message(msg)


_TRANSPORTS: dict[str, Callable[[str, str, str], None]] = {
    "console": _console,
    "log": _console,
    "brevo": _brevo,
    "smtp": _smtp,
}


def _transport() -> Callable[[str, str, str], None]:
    name = email_backend()
    if name in _TRANSPORTS:
        return _TRANSPORTS[name]
    if brevo_api_key():
        return _brevo
    if smtp_host():
        return _smtp
    if is_local_dev():
        return _console
    raise EmailSendError("No email transport configured (BREVO_API_KEY or SMTP_HOST)")


def send_email(*, to_email: str, subject: str, text: str) -> None:
    to_email = (to_email or "").strip()
    if "@" not in to_email:
        raise EmailSendError(f"Invalid recipient: {to_email!r}")
    _transport()(to_email, subject, text)
    logger.info("Email sent to=%s subject=%s", to_email, subject)
