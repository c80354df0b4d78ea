"""Tests for Slack / Telegram notifications."""

from __future__ import annotations

import asyncio
import json

import httpx

from untap.notifications import NotificationManager


def _manager(handler, **kwargs) -> NotificationManager:
    return NotificationManager(transport=httpx.MockTransport(handler), timeout_s=1.0, **kwargs)


class TestNotificationManager:
    def test_disabled_without_channels(self, monkeypatch) -> None:
        monkeypatch.setattr("untap.notifications.settings.slack_webhook_url", "")
        monkeypatch.setattr("untap.notifications.settings.telegram_bot_token", "")
        monkeypatch.setattr("untap.notifications.settings.telegram_chat_id", "")
        manager = NotificationManager()
        assert manager.is_enabled is False
        assert manager.status() == {
            "enabled": False, "slack_configured": False, "telegram_configured": False,
        }
        assert asyncio.run(manager.notify("title", "body")) is False

    def test_slack_delivery(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, text="ok")

        manager = _manager(handler, slack_webhook="https://hooks.slack.test/T/B/X")
        assert asyncio.run(manager.notify("🚨 Critical Service Down: OpenAI", "Failure Rate: 80%")) is True

        assert len(requests) == 1
        payload = json.loads(requests[0].content)
        assert "Critical Service Down: OpenAI" in payload["text"]
        assert "Failure Rate: 80%" in payload["text"]

    def test_telegram_delivery(self) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        manager = _manager(handler, telegram_token="123:abc", telegram_chat_id="42")
        assert asyncio.run(manager.notify("title", "body")) is True
        assert requests[0].url.path == "/bot123:abc/sendMessage"
        assert json.loads(requests[0].content)["chat_id"] == "42"

    def test_non_200_is_failure(self) -> None:
        manager = _manager(
            lambda request: httpx.Response(500, text="boom"),
            slack_webhook="https://hooks.slack.test/T/B/X",
        )
        assert asyncio.run(manager.notify("title", "body")) is False

    def test_transport_error_is_swallowed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        manager = _manager(handler, slack_webhook="https://hooks.slack.test/T/B/X")
        assert asyncio.run(manager.notify("title", "body")) is False

    def test_any_channel_success_counts(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "api.telegram.org":
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(500)

        manager = _manager(
            handler,
            slack_webhook="https://hooks.slack.test/T/B/X",
            telegram_token="123:abc",
            telegram_chat_id="42",
        )
        assert asyncio.run(manager.notify("title", "body")) is True
