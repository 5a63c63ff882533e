"""
Notification sink.

Persists a notification for every admitted fire, then forwards it to the
delivery channels the rule asks for. The stored notification is the source
of truth; channel delivery is best effort.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Optional

from coinpulse.database.models import (
    AlertRule,
    Notification,
    NotificationPriority,
    NotificationState,
    Signal,
    SignalKind,
    User,
    to_utc,
    utcnow,
)
from coinpulse.database.repository import NotificationRepository, UserRepository
from coinpulse.errors import DeliveryChannelError, PersistenceError
from coinpulse.notifiers.base import Notifier, NotificationPayload
from coinpulse.signals.scorer import strength_level

logger = logging.getLogger(__name__)

PRIORITY_FLOORS = [
    (85, NotificationPriority.CRITICAL),
    (70, NotificationPriority.HIGH),
    (50, NotificationPriority.MEDIUM),
]


def priority_for(strength: int) -> NotificationPriority:
    """Map signal strength onto notification priority."""
    for floor, priority in PRIORITY_FLOORS:
        if strength >= floor:
            return priority
    return NotificationPriority.LOW


def title_for(signal: Signal) -> str:
    """Notification title for a signal."""
    kind = SignalKind(signal.type)
    if kind == SignalKind.PRICE:
        change = signal.magnitude if signal.magnitude is not None else 0.0
        direction = "surge" if change >= 0 else "drop"
        return f"{signal.asset_symbol} price {direction} alert"
    level = strength_level(signal.strength)
    return f"{signal.asset_symbol} {level.lower()} {kind.value} shift"


class NotificationSink:
    """Records notifications and forwards them to delivery channels."""

    def __init__(
        self,
        notification_repo: NotificationRepository,
        user_repo: UserRepository,
        notifiers: Optional[list[Notifier]] = None,
        grouping_window: timedelta = timedelta(minutes=5),
    ):
        """
        Initialize sink.

        Args:
            notification_repo: Notification storage
            user_repo: User lookup for delivery addresses
            notifiers: Delivery channels, keyed by their `channel` name
            grouping_window: Notifications for the same user and asset within
                this window share a group ID
        """
        self.notification_repo = notification_repo
        self.user_repo = user_repo
        self.notifiers = {n.channel: n for n in (notifiers or [])}
        self.grouping_window = grouping_window

    def dispatch(
        self,
        user_id: int,
        signal: Signal,
        rule: AlertRule,
        now: Optional[datetime] = None,
    ) -> Notification:
        """
        Persist a notification for a fired signal and deliver it.

        Args:
            user_id: Recipient
            signal: Persisted signal that fired
            rule: Rule the signal fired against; selects the channels
            now: Send time, defaults to the current time

        Returns:
            The persisted notification

        Raises:
            PersistenceError: If the notification could not be stored
        """
        now = to_utc(now) if now else utcnow()
        notification = Notification(
            user_id=user_id,
            signal_id=signal.id,
            asset_symbol=signal.asset_symbol,
            title=title_for(signal),
            message=signal.description,
            priority=priority_for(signal.strength),
            state=NotificationState.UNREAD,
            sent_at=now,
        )

        try:
            notification = self.notification_repo.create_grouped(
                notification, now - self.grouping_window, uuid.uuid4().hex
            )
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Could not store notification for user {user_id}: {e}"
            ) from e

        delivered = self._deliver(user_id, notification, signal, rule)
        if delivered:
            try:
                self.notification_repo.set_delivered_channels(notification.id, delivered)
                notification.delivered_channels = delivered
            except sqlite3.Error as e:
                logger.warning(
                    f"Could not record delivery of notification {notification.id}: {e}"
                )
        return notification

    def _deliver(
        self,
        user_id: int,
        notification: Notification,
        signal: Signal,
        rule: AlertRule,
    ) -> list[str]:
        wanted = []
        if rule.push_notifications:
            wanted.append("push")
        if rule.email_notifications:
            wanted.append("email")
        if not wanted:
            return []

        user = self._recipient(user_id)
        payload = NotificationPayload.from_notification(
            notification,
            signal_id=signal.id,
            signal_type=SignalKind(signal.type).value,
            strength=signal.strength,
        )

        delivered = []
        for channel in wanted:
            notifier = self.notifiers.get(channel)
            if notifier is None:
                logger.warning(f"No {channel} notifier configured, skipping delivery")
                continue
            try:
                result = notifier.send(user, payload)
                if not result.success:
                    raise DeliveryChannelError(channel, result.error or "delivery failed")
            except DeliveryChannelError as e:
                logger.warning(f"Notification {notification.id} not delivered: {e}")
                continue
            except Exception as e:
                logger.error(f"Notification {notification.id} {channel} delivery crashed: {e}")
                continue
            delivered.append(channel)
        return delivered

    def _recipient(self, user_id: int) -> User:
        try:
            user = self.user_repo.get_by_id(user_id)
        except sqlite3.Error as e:
            logger.warning(f"Could not load user {user_id} for delivery: {e}")
            user = None
        return user or User(id=user_id)

    def mark_read(
        self, notification_id: int, now: Optional[datetime] = None
    ) -> Optional[Notification]:
        """
        Mark a notification as read. Repeated calls leave it read.

        Returns:
            The notification, or None if it does not exist
        """
        now = to_utc(now) if now else utcnow()
        if self.notification_repo.mark_read(notification_id, now):
            logger.debug(f"Notification {notification_id} marked read")
        return self.notification_repo.get_by_id(notification_id)

    def mark_all_read(self, user_id: int, now: Optional[datetime] = None) -> int:
        """Mark all of a user's unread notifications as read; returns how many changed."""
        now = to_utc(now) if now else utcnow()
        return self.notification_repo.mark_all_read(user_id, now)

    def archive(
        self, notification_id: int, now: Optional[datetime] = None
    ) -> Optional[Notification]:
        """Archive a notification. Archived notifications stay archived."""
        now = to_utc(now) if now else utcnow()
        self.notification_repo.archive(notification_id, now)
        return self.notification_repo.get_by_id(notification_id)

    def list_notifications(
        self,
        user_id: int,
        page: int = 1,
        limit: int = 20,
        asset_symbol: Optional[str] = None,
        priority: Optional[NotificationPriority] = None,
        include_archived: bool = False,
    ) -> list[Notification]:
        """A page of the user's notifications, newest first."""
        page = max(1, page)
        return self.notification_repo.list_for_user(
            user_id,
            limit=limit,
            offset=(page - 1) * limit,
            asset_symbol=asset_symbol,
            priority=priority,
            include_archived=include_archived,
        )

    def unread_count(self, user_id: int) -> int:
        """Number of unread notifications for a user."""
        return self.notification_repo.unread_count(user_id)
