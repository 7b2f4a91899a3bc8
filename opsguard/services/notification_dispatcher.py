"""Outbound notification dispatch.

Every escalation step and SLA warning goes through ``send(target, message)``.
A target reference is ``"<channel>:<address>"``:

- ``slack:default`` or ``slack:<webhook url>``: Slack incoming webhook
- ``webhook:<url>``: generic JSON POST
- ``email:<address>``: SMTP, run in a worker thread
- ``telegram:<chat id>``: Telegram Bot API sendMessage

Delivery is best-effort. Each call is bounded by
``settings.notification_timeout_seconds``; a timeout, channel error or any
other exception from a sender is logged and reported as FAILED, never raised
and never retried here. The next tick is the retry.
"""

import asyncio
import enum
import smtplib
from email.message import EmailMessage

import httpx

from opsguard.config import settings
from opsguard.logging_config import get_logger

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org/bot"


class NotificationStatus(str, enum.Enum):
    """Outcome of a single delivery attempt."""

    SENT = "sent"
    FAILED = "failed"


class NotificationError(Exception):
    """A channel could not deliver a message."""


def parse_target(target: str) -> tuple[str, str]:
    """Split a target reference into (channel, address).

    Raises:
        NotificationError: If the reference has no channel prefix or address.
    """
    channel, sep, address = target.partition(":")
    if not sep or not channel or not address:
        raise NotificationError(f"Malformed notification target: {target!r}")
    return channel.strip().lower(), address.strip()


async def _post_json(url: str, payload: dict) -> None:
    async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
        response = await client.post(url, json=payload)

    if response.status_code >= 400:
        raise NotificationError(
            f"HTTP delivery failed: {response.status_code} {response.text[:200]}"
        )


async def send_slack(address: str, message: str) -> None:
    """Post to a Slack incoming webhook."""
    url = settings.slack_webhook_url if address == "default" else address
    if not url:
        raise NotificationError("Slack webhook URL is not configured")
    await _post_json(url, {"text": message})


async def send_webhook(address: str, message: str) -> None:
    """POST ``{"message": ...}`` to an arbitrary URL."""
    await _post_json(address, {"message": message})


async def send_telegram(address: str, message: str) -> None:
    """Send a message through the Telegram Bot API."""
    if not settings.telegram_bot_token:
        raise NotificationError("Telegram bot token is not configured")

    async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
        response = await client.post(
            f"{TELEGRAM_API_BASE}{settings.telegram_bot_token}/sendMessage",
            json={"chat_id": address, "text": message},
        )

    if response.status_code != 200:
        raise NotificationError(
            f"Failed to send Telegram message: {response.status_code} {response.text[:200]}"
        )

    data = response.json()
    if not data.get("ok"):
        raise NotificationError(
            f"Telegram send failed: {data.get('description', 'Unknown')}"
        )


def _send_email_blocking(address: str, message: str) -> None:
    subject, _, body = message.partition("\n")

    email = EmailMessage()
    email["Subject"] = subject[:200]
    email["From"] = settings.smtp_from_address
    email["To"] = address
    email.set_content(body or subject)

    with smtplib.SMTP(
        host=settings.smtp_host,
        port=settings.smtp_port,
        timeout=settings.notification_timeout_seconds,
    ) as smtp:
        smtp.ehlo()
        if settings.smtp_use_tls:
            smtp.starttls()
            smtp.ehlo()
        if settings.smtp_username:
            smtp.login(settings.smtp_username, settings.smtp_password)
        smtp.send_message(email)


async def send_email(address: str, message: str) -> None:
    """Send a plain-text email; the first message line is the subject."""
    if not settings.smtp_host:
        raise NotificationError("SMTP host is not configured")
    try:
        await asyncio.to_thread(_send_email_blocking, address, message)
    except (smtplib.SMTPException, OSError) as e:
        raise NotificationError(f"SMTP delivery failed: {e}") from e


CHANNEL_SENDERS = {
    "slack": send_slack,
    "webhook": send_webhook,
    "email": send_email,
    "telegram": send_telegram,
}


async def send(target: str, message: str) -> NotificationStatus:
    """Deliver one message to one target reference.

    Args:
        target: Target reference, e.g. ``"email:oncall@example.com"``.
        message: Plain-text message body.

    Returns:
        NotificationStatus.SENT on success, FAILED otherwise.
    """
    try:
        channel, address = parse_target(target)
        sender = CHANNEL_SENDERS.get(channel)
        if sender is None:
            raise NotificationError(f"Unsupported notification channel: {channel}")

        await asyncio.wait_for(
            sender(address, message),
            timeout=settings.notification_timeout_seconds,
        )
    except NotificationError as e:
        logger.warning("Notification delivery failed", target=target, error=str(e))
        return NotificationStatus.FAILED
    except (TimeoutError, asyncio.TimeoutError):
        logger.warning(
            "Notification delivery timed out",
            target=target,
            timeout_seconds=settings.notification_timeout_seconds,
        )
        return NotificationStatus.FAILED
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.warning("Notification transport error", target=target, error=str(e))
        return NotificationStatus.FAILED
    except Exception as e:
        logger.error(
            "Unexpected notification error",
            target=target,
            error=f"{type(e).__name__}: {e}",
            exc_info=True,
        )
        return NotificationStatus.FAILED

    logger.info("Notification sent", target=target)
    return NotificationStatus.SENT
