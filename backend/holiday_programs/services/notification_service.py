"""Notification service — templated subscription emails sent through Resend."""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Protocol

import httpx

from holiday_programs.billing.errors import NotificationError
from holiday_programs.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

RENEWAL_REMINDER = "renewal_reminder"
EXPIRATION_NOTICE = "expiration_notice"

TEMPLATES = {
    RENEWAL_REMINDER: {
        "subject": "Your subscription expires in {days_remaining} days",
        "body": (
            "Hi {user_name},\n\n"
            "Your Holiday Programs subscription expires on {expiration_date}.\n\n"
            "Renew now to keep browsing and booking holiday activities "
            "without interruption:\n{renewal_url}\n\n"
            "Thanks,\nThe Holiday Programs team"
        ),
    },
    EXPIRATION_NOTICE: {
        "subject": "Your subscription has expired",
        "body": (
            "Hi {user_name},\n\n"
            "Your Holiday Programs subscription expired on {expired_date}.\n\n"
            "You can renew at any time to regain access:\n{renewal_url}\n\n"
            "Thanks,\nThe Holiday Programs team"
        ),
    },
}


class NotificationDispatcher(Protocol):
    """Anything that can deliver a templated email; raises on failure."""

    async def send(self, address: str, template_kind: str, template_data: dict) -> None: ...


def render_template(template_kind: str, template_data: dict) -> tuple[str, str]:
    """Return ``(subject, body)`` for a template, or raise NotificationError."""
    template = TEMPLATES.get(template_kind)
    if template is None:
        raise NotificationError(f"Unknown email template '{template_kind}'")
    try:
        return (
            template["subject"].format(**template_data),
            template["body"].format(**template_data),
        )
    except KeyError as e:
        raise NotificationError(
            f"Missing template field {e} for '{template_kind}'"
        ) from e


class ResendNotifier:
    """Send plain-text emails with the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout
        self._transport = transport

    async def send(self, address: str, template_kind: str, template_data: dict) -> None:
        subject, body = render_template(template_kind, template_data)

        if not self.api_key:
            logger.warning("Resend not configured, skipping %s email", template_kind)
            return

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    RESEND_API_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "from": self.sender,
                        "to": [address],
                        "subject": subject,
                        "text": body,
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Failed to send {template_kind} email: {e}") from e

        logger.info("Sent %s email", template_kind)


def _format_date(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


async def send_renewal_reminder(
    notifier: NotificationDispatcher,
    address: str,
    *,
    user_name: str | None,
    expiration_date: datetime,
    days_remaining: int,
    renewal_url: str,
) -> None:
    await notifier.send(
        address,
        RENEWAL_REMINDER,
        {
            "user_name": user_name or "Valued Customer",
            "expiration_date": _format_date(expiration_date),
            "days_remaining": days_remaining,
            "renewal_url": renewal_url,
        },
    )


async def send_expiration_notice(
    notifier: NotificationDispatcher,
    address: str,
    *,
    user_name: str | None,
    expired_date: datetime | None,
    renewal_url: str,
) -> None:
    await notifier.send(
        address,
        EXPIRATION_NOTICE,
        {
            "user_name": user_name or "Valued Customer",
            "expired_date": _format_date(expired_date) if expired_date else "today",
            "renewal_url": renewal_url,
        },
    )


@lru_cache
def get_notifier() -> NotificationDispatcher:
    """FastAPI dependency returning the configured email dispatcher."""
    return ResendNotifier(
        api_key=settings.resend_api_key,
        sender=settings.email_from,
        timeout=settings.email_timeout_seconds,
    )
