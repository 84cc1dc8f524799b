from __future__ import annotations

import html
import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from enum import StrEnum
from typing import Protocol

from backend.timecapsule.errors import NotificationError
from backend.timecapsule.models.capsule import ensure_utc

LOGGER = logging.getLogger("time_capsule.notifications")


class DispatchOutcome(StrEnum):
    SENT = "sent"
    SKIPPED = "skipped"


class NotificationDispatcher(Protocol):
    def send(self, to_address: str, title: str, publish_at: datetime) -> DispatchOutcome:
        ...


class SmtpEmailDispatcher:
    def __init__(
        self,
        *,
        host: str | None,
        port: int,
        sender: str | None,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._host = host
        self._port = port
        self._sender = sender
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout_seconds = max(1.0, float(timeout_seconds))

    @property
    def configured(self) -> bool:
        return bool(self._host) and self._port > 0 and bool(self._sender)

    def send(self, to_address: str, title: str, publish_at: datetime) -> DispatchOutcome:
        if not self.configured:
            LOGGER.warning("email not configured; skipping release notification")
            return DispatchOutcome.SKIPPED
        assert self._host is not None
        assert self._sender is not None

        message = build_release_message(
            sender=self._sender,
            to_address=to_address,
            title=title,
            publish_at=publish_at,
        )
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds) as smtp:
                if self._use_tls:
                    smtp.starttls()
                if self._username and self._password:
                    smtp.login(self._username, self._password)
                smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise NotificationError("Recipient refused by SMTP server.") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationError(f"SMTP delivery failed: {type(exc).__name__}") from exc
        return DispatchOutcome.SENT


def build_release_message(
    *,
    sender: str,
    to_address: str,
    title: str,
    publish_at: datetime,
) -> EmailMessage:
    released = ensure_utc(publish_at).strftime("%B %d, %Y %H:%M")
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to_address
    message["Subject"] = f'Your Time Capsule "{title}" is now public'
    message.set_content(
        f"Your Time Capsule message titled '{title}' is now public as of {released} UTC."
    )
    message.add_alternative(
        "<p>Your Time Capsule message titled "
        f"<strong>{html.escape(title)}</strong> is now public as of {released} UTC.</p>",
        subtype="html",
    )
    return message
