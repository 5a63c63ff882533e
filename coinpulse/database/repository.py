"""
Repository classes for CRUD operations.
"""

import json
from datetime import datetime
from typing import Optional

from .connection import Database
from .models import (
    AlertFrequency,
    AlertRule,
    DispatchWindow,
    Notification,
    NotificationPriority,
    NotificationState,
    Signal,
    SignalKind,
    User,
    UserWatchlist,
    to_utc,
)


def _ts(value: datetime) -> str:
    """Serialize a datetime so that stored values compare as strings."""
    return to_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return to_utc(datetime.fromisoformat(value))


class UserRepository:
    """CRUD operations for users."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, user: User) -> User:
        """Create a new user."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO users (email, push_webhook_url)
                VALUES (?, ?)
                """,
                (user.email, user.push_webhook_url),
            )
            user.id = cursor.lastrowid
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def update(self, user: User) -> None:
        """Update user details."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET email = ?, push_webhook_url = ?
                WHERE id = ?
                """,
                (user.email, user.push_webhook_url, user.id),
            )

    def delete(self, user_id: int) -> None:
        """Delete user."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM users WHERE id = ?", (user_id,))

    def list_all(self) -> list[User]:
        """List all users."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM users ORDER BY id")
        return [self._row_to_user(row) for row in cursor.fetchall()]

    def _row_to_user(self, row) -> User:
        """Convert database row to User."""
        return User(
            id=row["id"],
            email=row["email"],
            push_webhook_url=row["push_webhook_url"],
            created_at=row["created_at"],
        )


class WatchlistRepository:
    """CRUD operations for user watchlists."""

    def __init__(self, db: Database):
        self.db = db

    def add(self, user_id: int, asset_symbol: str) -> UserWatchlist:
        """Add asset to user's watchlist."""
        symbol = asset_symbol.upper()
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO user_watchlist (user_id, asset_symbol)
                VALUES (?, ?)
                """,
                (user_id, symbol),
            )
            entry_id = cursor.lastrowid
        return UserWatchlist(id=entry_id, user_id=user_id, asset_symbol=symbol)

    def remove(self, user_id: int, asset_symbol: str) -> None:
        """Remove asset from user's watchlist."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                DELETE FROM user_watchlist
                WHERE user_id = ? AND asset_symbol = ?
                """,
                (user_id, asset_symbol.upper()),
            )

    def get_user_watchlist(self, user_id: int) -> list[str]:
        """Get all asset symbols in user's watchlist."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT asset_symbol FROM user_watchlist
            WHERE user_id = ?
            ORDER BY asset_symbol
            """,
            (user_id,),
        )
        return [row["asset_symbol"] for row in cursor.fetchall()]

    def get_watchers(self, asset_symbol: str) -> list[int]:
        """Get IDs of users watching an asset."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT user_id FROM user_watchlist
            WHERE asset_symbol = ?
            ORDER BY user_id
            """,
            (asset_symbol.upper(),),
        )
        return [row["user_id"] for row in cursor.fetchall()]

    def list_symbols(self) -> list[str]:
        """List every asset watched by at least one user."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT DISTINCT asset_symbol FROM user_watchlist ORDER BY asset_symbol"
        )
        return [row["asset_symbol"] for row in cursor.fetchall()]

    def is_in_watchlist(self, user_id: int, asset_symbol: str) -> bool:
        """Check if asset is in user's watchlist."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT 1 FROM user_watchlist
            WHERE user_id = ? AND asset_symbol = ?
            """,
            (user_id, asset_symbol.upper()),
        )
        return cursor.fetchone() is not None


class AlertRuleRepository:
    """CRUD operations for alert rules."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, rule: AlertRule) -> AlertRule:
        """Create a new rule."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO alert_rules (
                    user_id, asset_symbol, sentiment_threshold,
                    price_change_threshold, enable_sentiment, enable_price,
                    enable_narrative, frequency, email_notifications,
                    push_notifications
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (rule.user_id, rule.asset_symbol) + self._settings(rule),
            )
            rule.id = cursor.lastrowid
        return rule

    def get_by_id(self, rule_id: int) -> Optional[AlertRule]:
        """Get rule by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM alert_rules WHERE id = ?", (rule_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def get_global(self, user_id: int) -> Optional[AlertRule]:
        """Get the user's global rule."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM alert_rules
            WHERE user_id = ? AND asset_symbol IS NULL
            """,
            (user_id,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def get_for_asset(self, user_id: int, asset_symbol: str) -> Optional[AlertRule]:
        """Get the user's rule for one asset."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM alert_rules
            WHERE user_id = ? AND asset_symbol = ?
            """,
            (user_id, asset_symbol.upper()),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def get_user_rules(self, user_id: int) -> list[AlertRule]:
        """Get all rules for a user, global rule first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM alert_rules
            WHERE user_id = ?
            ORDER BY asset_symbol IS NOT NULL, asset_symbol
            """,
            (user_id,),
        )
        return [self._row_to_rule(row) for row in cursor.fetchall()]

    def update(self, rule: AlertRule) -> None:
        """Update rule settings in place."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE alert_rules
                SET sentiment_threshold = ?, price_change_threshold = ?,
                    enable_sentiment = ?, enable_price = ?, enable_narrative = ?,
                    frequency = ?, email_notifications = ?, push_notifications = ?
                WHERE id = ?
                """,
                self._settings(rule) + (rule.id,),
            )

    def delete(self, rule_id: int) -> None:
        """Delete a rule."""
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM alert_rules WHERE id = ?", (rule_id,))

    def _settings(self, rule: AlertRule) -> tuple:
        return (
            rule.sentiment_threshold,
            rule.price_change_threshold,
            1 if rule.enable_sentiment else 0,
            1 if rule.enable_price else 0,
            1 if rule.enable_narrative else 0,
            AlertFrequency(rule.frequency).value,
            1 if rule.email_notifications else 0,
            1 if rule.push_notifications else 0,
        )

    def _row_to_rule(self, row) -> AlertRule:
        """Convert database row to AlertRule."""
        return AlertRule(
            id=row["id"],
            user_id=row["user_id"],
            asset_symbol=row["asset_symbol"],
            sentiment_threshold=row["sentiment_threshold"],
            price_change_threshold=row["price_change_threshold"],
            enable_sentiment=bool(row["enable_sentiment"]),
            enable_price=bool(row["enable_price"]),
            enable_narrative=bool(row["enable_narrative"]),
            frequency=AlertFrequency(row["frequency"]),
            email_notifications=bool(row["email_notifications"]),
            push_notifications=bool(row["push_notifications"]),
        )


class SignalRepository:
    """Append-only signal log."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, signal: Signal) -> Signal:
        """Persist a scored signal and assign its ID."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO signals
                (asset_symbol, type, strength, description, sources, magnitude, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    signal.asset_symbol,
                    SignalKind(signal.type).value,
                    signal.strength,
                    signal.description,
                    json.dumps(signal.sources),
                    signal.magnitude,
                    _ts(signal.timestamp),
                ),
            )
            signal.id = cursor.lastrowid
        return signal

    def get_by_id(self, signal_id: int) -> Optional[Signal]:
        """Get signal by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM signals WHERE id = ?", (signal_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_signal(row)

    def list_for_assets(
        self,
        asset_symbols: list[str],
        limit: int = 20,
        offset: int = 0,
    ) -> list[Signal]:
        """List signals for a set of assets, newest first."""
        if not asset_symbols:
            return []
        symbols = [s.upper() for s in asset_symbols]
        placeholders = ", ".join("?" for _ in symbols)
        cursor = self.db.connection.cursor()
        cursor.execute(
            f"""
            SELECT * FROM signals
            WHERE asset_symbol IN ({placeholders})
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (*symbols, limit, offset),
        )
        return [self._row_to_signal(row) for row in cursor.fetchall()]

    def count_for_assets(self, asset_symbols: list[str]) -> int:
        """Count signals for a set of assets."""
        if not asset_symbols:
            return 0
        symbols = [s.upper() for s in asset_symbols]
        placeholders = ", ".join("?" for _ in symbols)
        cursor = self.db.connection.cursor()
        cursor.execute(
            f"SELECT COUNT(*) FROM signals WHERE asset_symbol IN ({placeholders})",
            symbols,
        )
        return cursor.fetchone()[0]

    def _row_to_signal(self, row) -> Signal:
        """Convert database row to Signal."""
        return Signal(
            id=row["id"],
            asset_symbol=row["asset_symbol"],
            type=SignalKind(row["type"]),
            strength=row["strength"],
            description=row["description"],
            sources=json.loads(row["sources"]),
            magnitude=row["magnitude"],
            timestamp=_parse_ts(row["timestamp"]),
        )


class NotificationRepository:
    """CRUD operations for notifications. Notifications are never deleted."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, notification: Notification) -> Notification:
        """Create a new notification."""
        with self.db.transaction() as cursor:
            self._insert(cursor, notification)
        return notification

    def create_grouped(
        self, notification: Notification, since: datetime, new_group_id: str
    ) -> Notification:
        """
        Create a notification in the group of the user's latest one for the
        same asset sent after `since`, or in `new_group_id` if there is none.

        Lookup and insert share one transaction, so concurrent notifications
        for the same user and asset land in the same group.
        """
        with self.db.transaction() as cursor:
            notification.group_id = (
                self.find_recent_group(
                    notification.user_id, notification.asset_symbol, since
                )
                or new_group_id
            )
            self._insert(cursor, notification)
        return notification

    def _insert(self, cursor, notification: Notification) -> None:
        cursor.execute(
            """
            INSERT INTO notifications
            (user_id, signal_id, asset_symbol, title, message, priority,
             state, sent_at, read_at, group_id, delivered_channels)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                notification.user_id,
                notification.signal_id,
                notification.asset_symbol,
                notification.title,
                notification.message,
                NotificationPriority(notification.priority).value,
                NotificationState(notification.state).value,
                _ts(notification.sent_at),
                _ts(notification.read_at) if notification.read_at else None,
                notification.group_id,
                json.dumps(notification.delivered_channels),
            ),
        )
        notification.id = cursor.lastrowid

    def get_by_id(self, notification_id: int) -> Optional[Notification]:
        """Get notification by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_notification(row)

    def list_for_user(
        self,
        user_id: int,
        limit: int = 20,
        offset: int = 0,
        asset_symbol: Optional[str] = None,
        priority: Optional[NotificationPriority] = None,
        include_archived: bool = False,
    ) -> list[Notification]:
        """List a user's notifications, newest first."""
        clauses = ["user_id = ?"]
        params: list = [user_id]
        if not include_archived:
            clauses.append("state != ?")
            params.append(NotificationState.ARCHIVED.value)
        if asset_symbol:
            clauses.append("asset_symbol = ?")
            params.append(asset_symbol.upper())
        if priority:
            clauses.append("priority = ?")
            params.append(NotificationPriority(priority).value)

        cursor = self.db.connection.cursor()
        cursor.execute(
            f"""
            SELECT * FROM notifications
            WHERE {" AND ".join(clauses)}
            ORDER BY sent_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            (*params, limit, offset),
        )
        return [self._row_to_notification(row) for row in cursor.fetchall()]

    def unread_count(self, user_id: int) -> int:
        """Count a user's unread notifications."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND state = ?",
            (user_id, NotificationState.UNREAD.value),
        )
        return cursor.fetchone()[0]

    def mark_read(self, notification_id: int, read_at: datetime) -> bool:
        """Move an unread notification to read. False if nothing changed."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE notifications
                SET state = ?, read_at = ?
                WHERE id = ? AND state = ?
                """,
                (
                    NotificationState.READ.value,
                    _ts(read_at),
                    notification_id,
                    NotificationState.UNREAD.value,
                ),
            )
            return cursor.rowcount > 0

    def mark_all_read(self, user_id: int, read_at: datetime) -> int:
        """Mark every unread notification of a user as read."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE notifications
                SET state = ?, read_at = ?
                WHERE user_id = ? AND state = ?
                """,
                (
                    NotificationState.READ.value,
                    _ts(read_at),
                    user_id,
                    NotificationState.UNREAD.value,
                ),
            )
            return cursor.rowcount

    def archive(self, notification_id: int, archived_at: datetime) -> bool:
        """Archive a notification; unread ones get a read time too."""
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                UPDATE notifications
                SET state = ?, read_at = COALESCE(read_at, ?)
                WHERE id = ? AND state != ?
                """,
                (
                    NotificationState.ARCHIVED.value,
                    _ts(archived_at),
                    notification_id,
                    NotificationState.ARCHIVED.value,
                ),
            )
            return cursor.rowcount > 0

    def set_delivered_channels(self, notification_id: int, channels: list[str]) -> None:
        """Record which channels accepted the notification."""
        with self.db.transaction() as cursor:
            cursor.execute(
                "UPDATE notifications SET delivered_channels = ? WHERE id = ?",
                (json.dumps(channels), notification_id),
            )

    def find_recent_group(
        self, user_id: int, asset_symbol: str, since: datetime
    ) -> Optional[str]:
        """Group ID of the user's latest notification for an asset sent after `since`."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT group_id FROM notifications
            WHERE user_id = ?
              AND asset_symbol = ?
              AND sent_at >= ?
              AND group_id IS NOT NULL
            ORDER BY sent_at DESC, id DESC
            LIMIT 1
            """,
            (user_id, asset_symbol.upper(), _ts(since)),
        )
        row = cursor.fetchone()
        return row["group_id"] if row else None

    def _row_to_notification(self, row) -> Notification:
        """Convert database row to Notification."""
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            signal_id=row["signal_id"],
            asset_symbol=row["asset_symbol"],
            title=row["title"],
            message=row["message"],
            priority=NotificationPriority(row["priority"]),
            state=NotificationState(row["state"]),
            sent_at=_parse_ts(row["sent_at"]),
            read_at=_parse_ts(row["read_at"]),
            group_id=row["group_id"],
            delivered_channels=json.loads(row["delivered_channels"]),
        )


class DispatchWindowRepository:
    """Keyed store of throttling windows."""

    def __init__(self, db: Database):
        self.db = db

    def get(
        self, user_id: int, asset_symbol: str, signal_kind: SignalKind
    ) -> Optional[DispatchWindow]:
        """Get the window for one key."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM dispatch_windows
            WHERE user_id = ? AND asset_symbol = ? AND signal_kind = ?
            """,
            (user_id, asset_symbol.upper(), SignalKind(signal_kind).value),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return DispatchWindow(
            user_id=row["user_id"],
            asset_symbol=row["asset_symbol"],
            signal_kind=SignalKind(row["signal_kind"]),
            last_fired_at=_parse_ts(row["last_fired_at"]),
            window_end=_parse_ts(row["window_end"]),
        )

    def try_arm(
        self,
        user_id: int,
        asset_symbol: str,
        signal_kind: SignalKind,
        fired_at: datetime,
        window_end: datetime,
    ) -> bool:
        """
        Compare-and-swap the window for one key.

        Inserts the window if the key is new, or overwrites it only when the
        stored window has already ended at `fired_at`. Runs as a single
        statement, so a concurrent writer cannot slip in between the check
        and the write.

        Returns:
            True if this call armed the window, False if it is still cooling
        """
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO dispatch_windows
                (user_id, asset_symbol, signal_kind, last_fired_at, window_end)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, asset_symbol, signal_kind) DO UPDATE SET
                    last_fired_at = excluded.last_fired_at,
                    window_end = excluded.window_end
                WHERE dispatch_windows.window_end <= excluded.last_fired_at
                """,
                (
                    user_id,
                    asset_symbol.upper(),
                    SignalKind(signal_kind).value,
                    _ts(fired_at),
                    _ts(window_end),
                ),
            )
            return cursor.rowcount > 0

    def release(
        self,
        user_id: int,
        asset_symbol: str,
        signal_kind: SignalKind,
        fired_at: datetime,
    ) -> bool:
        """
        Drop the window armed at `fired_at`.

        A window re-armed by a later fire is left in place.

        Returns:
            True if the window was removed
        """
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                DELETE FROM dispatch_windows
                WHERE user_id = ? AND asset_symbol = ? AND signal_kind = ?
                  AND last_fired_at = ?
                """,
                (
                    user_id,
                    asset_symbol.upper(),
                    SignalKind(signal_kind).value,
                    _ts(fired_at),
                ),
            )
            return cursor.rowcount > 0
