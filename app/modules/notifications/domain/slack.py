"""
Slack delivery for billing ops alerts.

Monitor threshold crossings, flagged renewals and dependency outages are
posted to the ops channel. Identical alerts inside the dedup window are
dropped so a sweep re-checking the same flagged renewal every few
minutes does not flood the channel.
"""

import asyncio
import hashlib
import time
from typing import Any, Dict, List, Optional

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

logger = structlog.get_logger()

SEVERITY_COLORS = {
    "info": "#10b981",
    "warning": "#f59e0b",
    "critical": "#f43f5e",
}


def escape_mrkdwn(text: Any) -> str:
    """Neutralize Slack control sequences in gateway or tenant supplied text."""
    if text is None:
        return ""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def build_alert_attachment(
    title: str, message: str, severity: str, context: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": title[:150]}},
        {"type": "section", "text": {"type": "mrkdwn", "text": escape_mrkdwn(message)}},
    ]
    if context:
        blocks.append({
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*{escape_mrkdwn(k)}*\n{escape_mrkdwn(v)}"}
                for k, v in list(context.items())[:10]
            ],
        })
    return {"color": SEVERITY_COLORS.get(severity, SEVERITY_COLORS["warning"]), "blocks": blocks}


class SlackService:
    """Posts billing alerts to one channel."""

    def __init__(
        self,
        bot_token: str,
        channel_id: str,
        dedup_window_seconds: int = 3600,
        max_retries: int = 3,
        client: Optional[AsyncWebClient] = None,
    ):
        self.client = client or AsyncWebClient(token=bot_token)
        self.channel_id = channel_id
        self.dedup_window_seconds = dedup_window_seconds
        self.max_retries = max_retries
        # alert fingerprint -> monotonic time last posted
        self._recent: Dict[str, float] = {}

    def _is_duplicate(self, fingerprint: str) -> bool:
        now = time.monotonic()
        self._recent = {k: t for k, t in self._recent.items() if now - t < self.dedup_window_seconds}
        if fingerprint in self._recent:
            return True
        self._recent[fingerprint] = now
        return False

    async def _post(self, **payload) -> bool:
        for attempt in range(self.max_retries + 1):
            try:
                await self.client.chat_postMessage(channel=self.channel_id, **payload)
                return True
            except SlackApiError as e:
                if e.response.get("error") == "ratelimited" and attempt < self.max_retries:
                    delay = int(e.response.headers.get("Retry-After", 2 ** attempt))
                    logger.warning("slack_rate_limited", retry_after=delay, attempt=attempt)
                    await asyncio.sleep(delay)
                    continue
                logger.error("slack_post_failed", error=e.response.get("error"))
                return False
        return False

    async def send_alert(
        self,
        title: str,
        message: str,
        severity: str = "warning",
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        fingerprint = hashlib.sha256(f"{severity}|{title}|{message}".encode()).hexdigest()
        if self._is_duplicate(fingerprint):
            logger.info("slack_alert_deduplicated", title=title)
            return True

        return await self._post(
            text=f"[{severity.upper()}] {title}",
            attachments=[build_alert_attachment(title, message, severity, context)],
        )


def get_slack_service() -> Optional[SlackService]:
    """SlackService from settings, or None when Slack is not configured."""
    from app.shared.core.config import get_settings
    settings = get_settings()

    if settings.SLACK_BOT_TOKEN and settings.SLACK_CHANNEL_ID:
        return SlackService(settings.SLACK_BOT_TOKEN, settings.SLACK_CHANNEL_ID)
    return None
