"""Transactional email delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from html import escape
from typing import Optional, Protocol, Tuple

from sessionguard.config import Settings, settings as default_settings
from sessionguard.core.exceptions import UpstreamError, UpstreamRejectedError
from sessionguard.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    retryable: bool = False
    error: Optional[str] = None


class EmailSender(Protocol):
    def send(self, to: str, subject: str, html: str) -> EmailResult:
        ...


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class HttpEmailSender:
    """Send through a JSON transactional-email API (Brevo compatible)."""

    def __init__(self, client: UpstreamClient, *, cfg: Settings = default_settings) -> None:
        self.client = client
        self.api_url = cfg.EMAIL_API_URL
        self.api_key = cfg.EMAIL_API_KEY
        self.sender = {"name": cfg.EMAIL_SENDER_NAME, "email": cfg.EMAIL_SENDER_ADDRESS}

    def send(self, to: str, subject: str, html: str) -> EmailResult:
        payload = {
            "sender": self.sender,
            "to": [{"email": to}],
            "subject": subject,
            "htmlContent": html,
        }
        headers = {"api-key": self.api_key, "accept": "application/json"}
        try:
            response = self.client.post(self.api_url, json=payload, headers=headers)
        except UpstreamRejectedError as exc:
            logger.error(f"Email API rejected message to {redact_email(to)}: {exc.message}")
            return EmailResult(success=False, retryable=False, error=exc.message)
        except UpstreamError as exc:
            logger.error(f"Email API unreachable for {redact_email(to)}: {exc.message}")
            return EmailResult(success=False, retryable=True, error=exc.message)

        try:
            message_id = response.json().get("messageId")
        except ValueError:
            message_id = None
        logger.info(f"Email sent to {redact_email(to)} ({subject})")
        return EmailResult(success=True, message_id=message_id)


class LoggingEmailSender:
    """Development sender: logs the message instead of delivering it."""

    def send(self, to: str, subject: str, html: str) -> EmailResult:
        logger.info(f"Email delivery disabled; would send '{subject}' to {redact_email(to)}")
        logger.debug(html)
        return EmailResult(success=True, message_id=None)


def build_email_sender(cfg: Settings = default_settings) -> EmailSender:
    if not cfg.EMAIL_API_KEY:
        return LoggingEmailSender()
    return HttpEmailSender(UpstreamClient(cfg=cfg), cfg=cfg)


def _layout(title: str, body: str, link: str, action: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family:sans-serif\">"
        f"<h2>{escape(title)}</h2>"
        f"<p>{body}</p>"
        f"<p><a href=\"{escape(link, quote=True)}\">{escape(action)}</a></p>"
        f"<p style=\"color:#666;font-size:12px\">If the button does not work, copy this link: {escape(link)}</p>"
        "</body></html>"
    )


def password_reset_email(link: str, expire_minutes: int) -> Tuple[str, str]:
    body = (
        "Someone requested a password reset for your account. "
        f"This link expires in {expire_minutes} minutes and can be used once. "
        "If you did not request it, you can ignore this email."
    )
    return "Reset your password", _layout("Reset your password", body, link, "Choose a new password")


def verification_email(link: str, expire_minutes: int) -> Tuple[str, str]:
    body = f"Confirm your email address. This link expires in {expire_minutes} minutes."
    return "Verify your email address", _layout("Verify your email", body, link, "Verify email")
