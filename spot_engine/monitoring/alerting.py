"""
Operator alerting for events that need a human.

Sends notifications via webhook (Telegram or Discord, or a generic JSON endpoint).
Configure via environment variables:
  ALERT_WEBHOOK_URL  - Telegram bot URL or Discord webhook URL
  ALERT_CHAT_ID      - Telegram chat ID (required for Telegram, ignored for Discord)

If no webhook is configured, alerts are logged but not sent.
"""
import os
from datetime import datetime, timezone
from typing import Dict, Optional

import aiohttp

from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

_RATE_LIMIT_SECONDS = 300


def _is_telegram(url: str) -> bool:
    return "api.telegram.org" in url


def _is_discord(url: str) -> bool:
    return "discord.com/api/webhooks" in url or "discordapp.com/api/webhooks" in url


class AlertSender:
    """Webhook alert sender with per-event-type rate limiting (1 per 5 minutes)."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        chat_id: Optional[str] = None,
        rate_limit_seconds: int = _RATE_LIMIT_SECONDS,
    ):
        self.webhook_url = (webhook_url if webhook_url is not None else os.environ.get("ALERT_WEBHOOK_URL", "")).strip()
        self.chat_id = (chat_id if chat_id is not None else os.environ.get("ALERT_CHAT_ID", "")).strip()
        self.rate_limit_seconds = rate_limit_seconds
        self._last_alert_times: Dict[str, datetime] = {}

    async def send(self, event_type: str, message: str, urgent: bool = False) -> bool:
        """
        Send an alert. Returns True if a webhook delivery was attempted.

        Args:
            event_type: e.g. "RECONCILE_FAILING", "VIRTUAL_CLOSE"
            message: Human-readable message
            urgent: Bypass rate limiting
        """
        logger.warning("OPERATOR_ALERT", event_type=event_type, message=message, urgent=urgent)
        if not self.webhook_url:
            return False

        now = datetime.now(timezone.utc)
        if not urgent:
            last = self._last_alert_times.get(event_type)
            if last and (now - last).total_seconds() < self.rate_limit_seconds:
                return False
        self._last_alert_times[event_type] = now

        prefix = "🚨" if urgent else "📊"
        formatted = f"{prefix} [{event_type}] {now.strftime('%H:%M:%S UTC')}\n{message}"

        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
                if _is_telegram(self.webhook_url):
                    payload = {"chat_id": self.chat_id, "text": formatted, "parse_mode": "HTML"}
                    async with session.post(self.webhook_url, json=payload) as resp:
                        if resp.status != 200:
                            body = await resp.text()
                            logger.warning("Telegram alert failed", status=resp.status, body=body[:200])
                elif _is_discord(self.webhook_url):
                    async with session.post(self.webhook_url, json={"content": formatted}) as resp:
                        if resp.status not in (200, 204):
                            body = await resp.text()
                            logger.warning("Discord alert failed", status=resp.status, body=body[:200])
                else:
                    payload = {
                        "event_type": event_type,
                        "message": message,
                        "timestamp": now.isoformat(),
                        "urgent": urgent,
                    }
                    async with session.post(self.webhook_url, json=payload) as resp:
                        if resp.status >= 400:
                            logger.warning("Webhook alert failed", status=resp.status)
        except (aiohttp.ClientError, OSError, TimeoutError) as e:
            # Alert failures must never break the trading loop
            logger.warning("Alert send failed (non-fatal)", event_type=event_type, error=str(e))
        return True
