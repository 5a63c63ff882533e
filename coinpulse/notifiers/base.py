"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from coinpulse.database.models import Notification, NotificationPriority, User


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None


@dataclass
class NotificationPayload:
    """What a delivery channel needs to render one notification."""

    title: str
    message: str
    priority: NotificationPriority
    sent_at: datetime
    asset_symbol: Optional[str] = None
    notification_id: Optional[int] = None
    group_id: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_notification(
        cls, notification: Notification, **data: Any
    ) -> "NotificationPayload":
        """Build a payload from a persisted notification."""
        return cls(
            title=notification.title,
            message=notification.message,
            priority=NotificationPriority(notification.priority),
            sent_at=notification.sent_at,
            asset_symbol=notification.asset_symbol,
            notification_id=notification.id,
            group_id=notification.group_id,
            data=data,
        )


class Notifier(ABC):
    """Abstract base class for delivery channels."""

    channel: str = ""

    @abstractmethod
    def send(self, user: User, payload: NotificationPayload) -> NotificationResult:
        """
        Deliver one notification to a user.

        Args:
            user: Recipient, with delivery addresses
            payload: Notification to deliver

        Returns:
            NotificationResult indicating success or failure
        """
        pass


class NotifierFactory:
    """Factory for creating notifier instances."""

    @staticmethod
    def create(config: dict[str, Any]) -> Notifier:
        """
        Create a notifier from configuration.

        Args:
            config: Notifier configuration dict

        Returns:
            Appropriate Notifier instance

        Raises:
            ValueError: If notifier type is unknown
        """
        notifier_type = config.get("type")

        if notifier_type == "push":
            from .push import PushNotifier

            return PushNotifier(
                gateway_url=config.get("gateway_url") or None,
                timeout=config.get("timeout_seconds", 10),
            )

        elif notifier_type == "email":
            from .email import EmailNotifier

            return EmailNotifier(
                smtp_host=config.get("smtp_host", ""),
                smtp_port=config.get("smtp_port", 587),
                smtp_user=config.get("smtp_user", ""),
                smtp_password=config.get("smtp_password", ""),
                from_address=config.get("from_address", ""),
            )

        else:
            raise ValueError(f"Unknown notifier type: {notifier_type}")
