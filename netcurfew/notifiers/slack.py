"""Slack webhook notifier for block/unblock transitions."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from netcurfew.models import Action, Directive

logger = logging.getLogger(__name__)

ACTION_COLORS = {
    Action.BLOCK: "#F44336",    # red
    Action.UNBLOCK: "#4CAF50",  # green
}

QUOTA_COLOR = "#FF9800"  # orange


@dataclass
class SlackConfig:
    """Configuration for Slack notifier."""
    webhook_url: str
    enabled: bool = True
    notify_unblock: bool = True


class SlackNotifier:
    """Async Slack webhook notifier."""

    def __init__(self, config: SlackConfig) -> None:
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _format_directive(
        self, directive: Directive, device_name: str, timestamp: Optional[datetime] = None
    ) -> dict:
        """Format a directive as a Slack message with attachment."""
        verb = "blocked" if directive.action is Action.BLOCK else "unblocked"

        fields = [
            {"title": "Target", "value": f"`{directive.target}`", "short": True},
            {"title": "Chain", "value": directive.chain, "short": True},
        ]
        if directive.reason:
            fields.append({"title": "Reason", "value": directive.reason, "short": True})

        attachment = {
            "color": ACTION_COLORS[directive.action],
            "title": f"{device_name} {verb}",
            "fields": fields,
            "footer": "netcurfew",
            "ts": int((timestamp or datetime.now()).timestamp()),
        }
        return {"attachments": [attachment]}

    def _format_quota_exhausted(
        self, device_name: str, quota_minutes: int, timestamp: Optional[datetime] = None
    ) -> dict:
        attachment = {
            "color": QUOTA_COLOR,
            "title": f"{device_name} used its daily quota",
            "text": f"{quota_minutes} minutes online today; blocked until the next reset.",
            "footer": "netcurfew",
            "ts": int((timestamp or datetime.now()).timestamp()),
        }
        return {"attachments": [attachment]}

    async def send_directive(
        self, directive: Directive, device_name: str, timestamp: Optional[datetime] = None
    ) -> bool:
        """Send a block/unblock notice. Returns True if sent successfully.

        ``timestamp`` is the tick time the directive was decided at.
        """
        if not self.config.enabled:
            return False
        if directive.action is Action.UNBLOCK and not self.config.notify_unblock:
            return False
        payload = self._format_directive(directive, device_name, timestamp)
        return await self._post(payload, f"{device_name} {directive.action.value}")

    async def send_quota_exhausted(
        self, device_name: str, quota_minutes: int, timestamp: Optional[datetime] = None
    ) -> bool:
        """Send a quota exhaustion notice. Returns True if sent successfully."""
        if not self.config.enabled:
            return False
        payload = self._format_quota_exhausted(device_name, quota_minutes, timestamp)
        return await self._post(payload, f"{device_name} quota")

    async def _post(self, payload: dict, label: str) -> bool:
        try:
            client = await self._get_client()
            resp = await client.post(self.config.webhook_url, json=payload)

            if resp.status_code == 200:
                logger.debug(f"Slack notification sent: {label}")
                return True
            else:
                logger.warning(f"Slack webhook failed: {resp.status_code} - {resp.text}")
                return False

        except httpx.TimeoutException:
            logger.warning("Slack webhook timeout")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Slack webhook error: {e}")
            return False
