"""Owner notifications — Slack and Telegram webhooks.

Fired by the incident evaluator when a critical service opens or resolves
an incident, and by the admin test endpoint. Delivery is best-effort:
``notify`` never raises and reports whether any channel accepted the
message.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from untap.config import settings

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org/bot{token}"


class NotificationManager:
    """Central dispatcher for Slack / Telegram notifications."""

    def __init__(
        self,
        slack_webhook: str = "",
        telegram_token: str = "",
        telegram_chat_id: str = "",
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.slack_webhook = slack_webhook or settings.slack_webhook_url
        self.telegram_token = telegram_token or settings.telegram_bot_token
        self.telegram_chat_id = telegram_chat_id or settings.telegram_chat_id
        self.timeout_s = timeout_s or settings.notify_timeout_s
        self._transport = transport
        self._enabled = bool(self.slack_webhook or (self.telegram_token and self.telegram_chat_id))

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self._enabled,
            "slack_configured": bool(self.slack_webhook),
            "telegram_configured": bool(self.telegram_token and self.telegram_chat_id),
        }

    async def notify(self, title: str, content: str) -> bool:
        """Send ``title`` + ``content`` to every configured channel."""
        if not self._enabled:
            logger.debug("Notifications disabled — dropping %r", title)
            return False

        text = f"*{title}*\n\n{content}"
        sends = []
        if self.slack_webhook:
            sends.append(self._send_slack(text))
        if self.telegram_token and self.telegram_chat_id:
            sends.append(self._send_telegram(text))

        results = await asyncio.gather(*sends, return_exceptions=True)
        return any(r is True for r in results)

    # -- Channels -------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)

    async def _send_slack(self, text: str) -> bool:
        """POST to Slack incoming webhook."""
        try:
            async with self._client() as client:
                resp = await client.post(self.slack_webhook, json={"text": text, "mrkdwn": True})
            if resp.status_code != 200:
                logger.warning("Slack webhook returned %d: %s", resp.status_code, resp.text[:200])
                return False
            return True
        except Exception as exc:
            logger.warning("Slack notification failed: %s", exc)
            return False

    async def _send_telegram(self, text: str) -> bool:
        """POST to Telegram Bot API."""
        url = f"{TELEGRAM_API.format(token=self.telegram_token)}/sendMessage"
        try:
            async with self._client() as client:
                resp = await client.post(
                    url,
                    json={"chat_id": self.telegram_chat_id, "text": text, "parse_mode": "Markdown"},
                )
            if resp.status_code != 200:
                logger.warning("Telegram API returned %d: %s", resp.status_code, resp.text[:200])
                return False
            return True
        except Exception as exc:
            logger.warning("Telegram notification failed: %s", exc)
            return False
