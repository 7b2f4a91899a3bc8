"""Tests for outbound notification dispatch."""

import asyncio
import smtplib
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from opsguard.services import notification_dispatcher
from opsguard.services.notification_dispatcher import (
    NotificationError,
    NotificationStatus,
    parse_target,
    send,
    send_email,
    send_slack,
    send_telegram,
)


def mock_response(status_code: int = 200, json_data: dict | None = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.text = "error body"
    response.json.return_value = json_data or {"ok": True}
    return response


def mock_async_client(response: MagicMock | None = None, post_side_effect=None) -> MagicMock:
    client = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=post_side_effect)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


class TestParseTarget:
    def test_splits_on_first_colon(self):
        assert parse_target("webhook:https://example.com/hook") == (
            "webhook",
            "https://example.com/hook",
        )

    def test_channel_is_normalized(self):
        assert parse_target(" Email :ops@example.com") == ("email", "ops@example.com")

    @pytest.mark.parametrize("target", ["", "slack", "slack:", ":address"])
    def test_malformed_targets(self, target):
        with pytest.raises(NotificationError):
            parse_target(target)


class TestSend:
    @pytest.mark.asyncio
    async def test_success(self):
        sender = AsyncMock()

        with patch.dict(notification_dispatcher.CHANNEL_SENDERS, {"slack": sender}):
            status = await send("slack:default", "hello")

        assert status == NotificationStatus.SENT
        sender.assert_awaited_once_with("default", "hello")

    @pytest.mark.asyncio
    async def test_unknown_channel_fails(self):
        assert await send("pager:123", "hello") == NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_malformed_target_fails(self):
        assert await send("nonsense", "hello") == NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_channel_error_fails(self):
        sender = AsyncMock(side_effect=NotificationError("rejected"))

        with patch.dict(notification_dispatcher.CHANNEL_SENDERS, {"webhook": sender}):
            status = await send("webhook:https://example.com", "hello")

        assert status == NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_transport_error_fails(self):
        sender = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with patch.dict(notification_dispatcher.CHANNEL_SENDERS, {"webhook": sender}):
            status = await send("webhook:https://example.com", "hello")

        assert status == NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_webhook_url_fails(self):
        with patch.object(notification_dispatcher.settings, "slack_webhook_url", "http://[::1"):
            status = await send("slack:default", "hello")

        assert status == NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_sender_exception_fails(self):
        sender = AsyncMock(side_effect=RuntimeError("driver bug"))

        with patch.dict(notification_dispatcher.CHANNEL_SENDERS, {"telegram": sender}):
            status = await send("telegram:42", "hello")

        assert status == NotificationStatus.FAILED

    @pytest.mark.asyncio
    async def test_slow_channel_times_out(self):
        async def hang(address, message):
            await asyncio.sleep(10)

        with (
            patch.dict(notification_dispatcher.CHANNEL_SENDERS, {"slack": hang}),
            patch.object(notification_dispatcher.settings, "notification_timeout_seconds", 0.05),
        ):
            status = await send("slack:default", "hello")

        assert status == NotificationStatus.FAILED


class TestChannels:
    @pytest.mark.asyncio
    async def test_slack_default_uses_configured_webhook(self):
        client = mock_async_client(mock_response(200))

        with (
            patch.object(
                notification_dispatcher.settings,
                "slack_webhook_url",
                "https://hooks.slack.com/services/T/B/X",
            ),
            patch("opsguard.services.notification_dispatcher.httpx.AsyncClient", return_value=client),
        ):
            await send_slack("default", "Incident opened")

        client.post.assert_awaited_once_with(
            "https://hooks.slack.com/services/T/B/X", json={"text": "Incident opened"}
        )

    @pytest.mark.asyncio
    async def test_slack_without_webhook_raises(self):
        with patch.object(notification_dispatcher.settings, "slack_webhook_url", ""):
            with pytest.raises(NotificationError):
                await send_slack("default", "Incident opened")

    @pytest.mark.asyncio
    async def test_http_error_status_raises(self):
        client = mock_async_client(mock_response(500))

        with patch(
            "opsguard.services.notification_dispatcher.httpx.AsyncClient", return_value=client
        ):
            with pytest.raises(NotificationError, match="500"):
                await send_slack("https://hooks.example.com/x", "msg")

    @pytest.mark.asyncio
    async def test_telegram_not_ok_raises(self):
        client = mock_async_client(
            mock_response(200, {"ok": False, "description": "chat not found"})
        )

        with (
            patch.object(notification_dispatcher.settings, "telegram_bot_token", "123:abc"),
            patch(
                "opsguard.services.notification_dispatcher.httpx.AsyncClient",
                return_value=client,
            ),
        ):
            with pytest.raises(NotificationError, match="chat not found"):
                await send_telegram("42", "msg")

    @pytest.mark.asyncio
    async def test_email_without_smtp_host_raises(self):
        with patch.object(notification_dispatcher.settings, "smtp_host", ""):
            with pytest.raises(NotificationError):
                await send_email("ops@example.com", "Subject\nBody")

    @pytest.mark.asyncio
    async def test_email_uses_first_line_as_subject(self):
        smtp = MagicMock()
        smtp.__enter__ = MagicMock(return_value=smtp)
        smtp.__exit__ = MagicMock(return_value=False)

        with (
            patch.object(notification_dispatcher.settings, "smtp_host", "smtp.example.com"),
            patch.object(notification_dispatcher.settings, "smtp_use_tls", False),
            patch.object(notification_dispatcher.settings, "smtp_username", ""),
            patch("opsguard.services.notification_dispatcher.smtplib.SMTP", return_value=smtp),
        ):
            await send_email("ops@example.com", "[OpsGuard] Incident: Disk full\nDetails")

        sent = smtp.send_message.call_args.args[0]
        assert sent["Subject"] == "[OpsGuard] Incident: Disk full"
        assert sent["To"] == "ops@example.com"

    @pytest.mark.asyncio
    async def test_smtp_failure_becomes_notification_error(self):
        with (
            patch.object(notification_dispatcher.settings, "smtp_host", "smtp.example.com"),
            patch(
                "opsguard.services.notification_dispatcher.smtplib.SMTP",
                side_effect=smtplib.SMTPConnectError(421, "unavailable"),
            ),
        ):
            with pytest.raises(NotificationError):
                await send_email("ops@example.com", "Subject\nBody")
