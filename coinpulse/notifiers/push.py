"""
Push notifier over an HTTP webhook.
"""

import math
import time
from typing import Any, Optional

import requests

from coinpulse.database.models import NotificationPriority, User
from coinpulse.errors import DeliveryChannelError
from .base import Notifier, NotificationPayload, NotificationResult


class PushNotifier(Notifier):
    """Posts notifications to a push gateway, or to the user's own webhook."""

    channel = "push"

    PRIORITY_COLORS = {
        NotificationPriority.LOW: 0x95A5A6,  # Grey
        NotificationPriority.MEDIUM: 0x3498DB,  # Blue
        NotificationPriority.HIGH: 0xFFA500,  # Orange
        NotificationPriority.CRITICAL: 0xFF0000,  # Red
    }

    # Cap on Retry-After waits, in seconds
    MAX_RETRY_AFTER = 30.0

    def __init__(self, gateway_url: Optional[str] = None, timeout: float = 10):
        """
        Initialize push notifier.

        Args:
            gateway_url: Push gateway used when the user has no webhook of their own
            timeout: HTTP timeout in seconds
        """
        self.gateway_url = gateway_url
        self.timeout = timeout

    def send(self, user: User, payload: NotificationPayload) -> NotificationResult:
        """Send notification as a push message."""
        url = user.push_webhook_url or self.gateway_url
        if not url:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error="No push endpoint configured",
            )

        try:
            self._send_webhook(url, self._create_payload(user, payload))
            return NotificationResult(success=True, channel=self.channel)

        except DeliveryChannelError as e:
            return NotificationResult(success=False, channel=self.channel, error=str(e))
        except requests.exceptions.ConnectionError as e:
            return NotificationResult(
                success=False,
                channel=self.channel,
                error=f"Connection error: {str(e)}",
            )
        except Exception as e:
            return NotificationResult(success=False, channel=self.channel, error=str(e))

    def _send_webhook(self, url: str, body: dict[str, Any]) -> requests.Response:
        """Post the payload, retrying once when rate limited."""
        response = requests.post(url, json=body, timeout=self.timeout)

        # Handle rate limiting
        if response.status_code == 429:
            time.sleep(self._retry_delay(response.headers.get("Retry-After")))
            response = requests.post(url, json=body, timeout=self.timeout)

        if not response.ok:
            raise DeliveryChannelError(
                self.channel, f"HTTP {response.status_code}: {response.text}"
            )
        return response

    def _retry_delay(self, retry_after: Optional[str]) -> float:
        """Seconds to wait before retrying, capped at MAX_RETRY_AFTER."""
        try:
            delay = float(retry_after)
        except (TypeError, ValueError):
            return 1.0
        if math.isnan(delay):
            return 1.0
        return min(max(delay, 0.0), self.MAX_RETRY_AFTER)

    def _create_payload(self, user: User, payload: NotificationPayload) -> dict[str, Any]:
        """Create push message body."""
        fields = []
        if payload.asset_symbol:
            fields.append({"name": "Asset", "value": payload.asset_symbol})
        fields.append({"name": "Priority", "value": payload.priority.value.title()})
        if "strength" in payload.data:
            fields.append({"name": "Strength", "value": f"{payload.data['strength']}/100"})

        return {
            "user_id": user.id,
            "notification": {
                "id": payload.notification_id,
                "title": payload.title,
                "body": payload.message,
                "priority": payload.priority.value,
                "color": self._get_color(payload.priority),
                "group_id": payload.group_id,
                "timestamp": payload.sent_at.isoformat(),
                "fields": fields,
                "data": payload.data,
            },
        }

    def _get_color(self, priority: NotificationPriority) -> int:
        """Get accent color based on priority."""
        return self.PRIORITY_COLORS.get(priority, self.PRIORITY_COLORS[NotificationPriority.MEDIUM])
