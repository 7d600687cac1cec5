from __future__ import annotations

import logging
import os
import smtplib
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any

from farmtrack.errors import EMAIL_DELIVERY_FAILED
from farmtrack.settings import get_settings

logger = logging.getLogger("farmtrack.email")

EMAIL_DISABLED = "EMAIL_DISABLED"
EMAIL_NOT_CONFIGURED = "EMAIL_NOT_CONFIGURED"
EMAIL_NO_RECIPIENT = "EMAIL_NO_RECIPIENT"


@dataclass(frozen=True, slots=True)
class EmailSendOutcome:
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class EmailDeliveryResult:
    success: bool
    recipient: str | None
    attempts: int
    message_id: str | None = None
    error: str | None = None

    @property
    def error_kind(self) -> str | None:
        return None if self.success else EMAIL_DELIVERY_FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "recipient": self.recipient,
            "attempts": self.attempts,
            "message_id": self.message_id,
            "error": self.error,
        }


class SmtpEmailChannel:
    """Single-attempt SMTP sender; retries belong to ``EmailDispatcher``."""

    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = bool(settings.notification_email_enabled)
        self.from_name = settings.email_from_name
        self.smtp_host = (os.getenv("SMTP_HOST") or "").strip()
        self.smtp_port = int((os.getenv("SMTP_PORT") or "587").strip() or "587")
        self.smtp_user = (os.getenv("SMTP_USER") or "").strip()
        self.smtp_pass = os.getenv("SMTP_PASS") or ""
        self.smtp_from = (os.getenv("SMTP_FROM") or self.smtp_user).strip()
        self.smtp_use_tls = (os.getenv("SMTP_USE_TLS") or "true").strip().lower() not in {"0", "false", "no"}
        self.smtp_timeout_seconds = float((os.getenv("SMTP_TIMEOUT_SECONDS") or "15").strip() or "15")
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, to: str, subject: str, html: str) -> EmailSendOutcome:
        message_id = make_msgid(domain=self.smtp_from.split("@")[-1] if "@" in self.smtp_from else None)
        email_message = EmailMessage()
        email_message["From"] = formataddr((self.from_name, self.smtp_from))
        email_message["To"] = to
        email_message["Subject"] = subject
        email_message["Message-ID"] = message_id
        email_message.set_content("This alert requires an HTML capable email client.")
        email_message.add_alternative(html, subtype="html")

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.smtp_timeout_seconds) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(email_message)
        return EmailSendOutcome(success=True, message_id=message_id)

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "enabled": bool(self.enabled),
            "configured": self.configured,
            "smtp_host_set": bool(self.smtp_host),
            "smtp_from_set": bool(self.smtp_from),
            "smtp_user_set": bool(self.smtp_user),
            "smtp_use_tls": bool(self.smtp_use_tls),
            "missing_fields": missing_fields,
        }


class EmailDispatcher:
    """Delivers one email with bounded retries and exponential backoff.

    Holds no per-send state, so one instance can serve concurrent tenant cycles.
    """

    def __init__(
        self,
        channel: Any | None = None,
        *,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.channel = channel if channel is not None else SmtpEmailChannel()
        self.max_attempts = max(1, int(max_attempts if max_attempts is not None else settings.email_max_attempts))
        self.backoff_base_seconds = float(
            backoff_base_seconds if backoff_base_seconds is not None else settings.email_backoff_base_seconds
        )
        self._sleep = sleep

    def backoff_seconds(self, attempt: int) -> float:
        return self.backoff_base_seconds ** attempt

    def send(self, recipient: str | None, subject: str, body: str) -> EmailDeliveryResult:
        to = (recipient or "").strip()
        if not to:
            logger.info("email_skip_no_recipient", extra={"subject": subject})
            return EmailDeliveryResult(success=False, recipient=None, attempts=0, error=EMAIL_NO_RECIPIENT)
        if not getattr(self.channel, "enabled", True):
            logger.info("email_channel_disabled", extra={"subject": subject, "recipient": to})
            return EmailDeliveryResult(success=False, recipient=to, attempts=0, error=EMAIL_DISABLED)
        if not getattr(self.channel, "configured", True):
            logger.warning("email_channel_not_configured", extra={"subject": subject, "recipient": to})
            return EmailDeliveryResult(success=False, recipient=to, attempts=0, error=EMAIL_NOT_CONFIGURED)

        last_error: str | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                outcome = self.channel.send(to, subject, body)
            except Exception as exc:
                last_error = f"{exc.__class__.__name__}: {exc}"[:500]
            else:
                if outcome.success:
                    logger.info(
                        "email_sent",
                        extra={"recipient": to, "subject": subject, "attempt": attempt, "message_id": outcome.message_id},
                    )
                    return EmailDeliveryResult(
                        success=True,
                        recipient=to,
                        attempts=attempt,
                        message_id=outcome.message_id,
                    )
                last_error = (outcome.error or "EMAIL_SEND_REJECTED")[:500]

            logger.warning(
                "email_send_attempt_failed",
                extra={
                    "recipient": to,
                    "subject": subject,
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "error": last_error,
                },
            )
            if attempt < self.max_attempts:
                self._sleep(self.backoff_seconds(attempt))

        logger.error(
            "email_delivery_failed",
            extra={"recipient": to, "subject": subject, "attempts": self.max_attempts, "error": last_error},
        )
        return EmailDeliveryResult(success=False, recipient=to, attempts=self.max_attempts, error=last_error)


_default_dispatcher: EmailDispatcher | None = None
_default_dispatcher_lock = threading.Lock()


def get_email_dispatcher() -> EmailDispatcher:
    global _default_dispatcher
    with _default_dispatcher_lock:
        if _default_dispatcher is None:
            _default_dispatcher = EmailDispatcher()
        return _default_dispatcher
