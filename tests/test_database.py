"""
Database layer tests.
Tests for SQLite connection, schema creation, and CRUD operations.
"""

import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest

from coinpulse.database.connection import Database
from coinpulse.database.models import (
    AlertFrequency,
    AlertRule,
    Notification,
    NotificationPriority,
    NotificationState,
    Signal,
    SignalKind,
    User,
)
from coinpulse.database.repository import (
    AlertRuleRepository,
    DispatchWindowRepository,
    UserRepository,
)


class TestDatabaseConnection:
    """Test database connection and initialization."""

    def test_create_in_memory_database(self):
        """Should create an in-memory SQLite database."""
        db = Database(":memory:")
        assert db.connection is not None

    def test_create_file_database(self, tmp_path: Path):
        """Should create a file-based SQLite database and its directory."""
        db_path = tmp_path / "nested" / "test.db"
        db = Database(str(db_path))
        db.initialize()
        assert db_path.exists()
        db.close()

    def test_initialize_schema(self):
        """Should create all required tables on initialization."""
        db = Database(":memory:")
        db.initialize()

        cursor = db.connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}

        expected_tables = {
            "users",
            "user_watchlist",
            "alert_rules",
            "signals",
            "notifications",
            "dispatch_windows",
        }
        assert expected_tables.issubset(tables)

    def test_initialize_is_idempotent(self):
        """Should allow running initialization twice."""
        db = Database(":memory:")
        db.initialize()
        db.initialize()

    def test_close_connection(self):
        """Should properly close database connection."""
        db = Database(":memory:")
        db.close()
        with pytest.raises(sqlite3.ProgrammingError):
            db.connection.execute("SELECT 1")

    def test_transaction_rolls_back_on_error(self, db):
        """Should discard writes when the block raises."""
        with pytest.raises(RuntimeError):
            with db.transaction() as cursor:
                cursor.execute("INSERT INTO users (email) VALUES ('a@example.com')")
                raise RuntimeError("boom")

        assert UserRepository(db).list_all() == []


class TestUserRepository:
    """Test User CRUD operations."""

    def test_create_and_get_user(self, repos):
        """Should create a user and read it back."""
        user = repos["user"].create(
            User(email="test@example.com", push_webhook_url="https://push.example.com/1")
        )
        assert user.id is not None

        found = repos["user"].get_by_id(user.id)
        assert found.email == "test@example.com"
        assert found.push_webhook_url == "https://push.example.com/1"

    def test_get_missing_user(self, repos):
        """Should return None for unknown IDs."""
        assert repos["user"].get_by_id(999) is None

    def test_update_user(self, repos):
        """Should update delivery addresses."""
        user = repos["user"].create(User(email="old@example.com"))
        user.email = "new@example.com"
        repos["user"].update(user)
        assert repos["user"].get_by_id(user.id).email == "new@example.com"

    def test_delete_user_cascades_watchlist(self, repos):
        """Should remove the user's watchlist with the user."""
        user = repos["user"].create(User(email="test@example.com"))
        repos["watchlist"].add(user.id, "BTC")
        repos["user"].delete(user.id)

        assert repos["user"].get_by_id(user.id) is None
        assert repos["watchlist"].get_watchers("BTC") == []


class TestWatchlistRepository:
    """Test watchlist operations."""

    @pytest.fixture
    def user(self, repos):
        return repos["user"].create(User(email="test@example.com"))

    def test_add_uppercases_symbol(self, repos, user):
        """Should store symbols uppercased."""
        entry = repos["watchlist"].add(user.id, "btc")
        assert entry.asset_symbol == "BTC"
        assert repos["watchlist"].get_user_watchlist(user.id) == ["BTC"]

    def test_duplicate_add_rejected(self, repos, user):
        """Should reject watching the same asset twice."""
        repos["watchlist"].add(user.id, "BTC")
        with pytest.raises(sqlite3.IntegrityError):
            repos["watchlist"].add(user.id, "BTC")

    def test_get_watchers(self, repos, user):
        """Should list every user watching an asset."""
        other = repos["user"].create(User(email="other@example.com"))
        repos["watchlist"].add(user.id, "BTC")
        repos["watchlist"].add(other.id, "BTC")
        repos["watchlist"].add(other.id, "ETH")

        assert repos["watchlist"].get_watchers("btc") == [user.id, other.id]
        assert repos["watchlist"].list_symbols() == ["BTC", "ETH"]

    def test_remove(self, repos, user):
        """Should remove an asset from the watchlist."""
        repos["watchlist"].add(user.id, "BTC")
        repos["watchlist"].remove(user.id, "btc")
        assert not repos["watchlist"].is_in_watchlist(user.id, "BTC")


class TestAlertRuleRepository:
    """Test alert rule storage."""

    @pytest.fixture
    def user(self, repos):
        return repos["user"].create(User(email="test@example.com"))

    def test_create_global_and_asset_rules(self, repos, user):
        """Should keep global and asset rules apart."""
        repo: AlertRuleRepository = repos["rule"]
        repo.create(AlertRule(user_id=user.id, price_change_threshold=5.0))
        repo.create(AlertRule(user_id=user.id, asset_symbol="BTC", price_change_threshold=2.0))

        assert repo.get_global(user.id).price_change_threshold == 5.0
        assert repo.get_for_asset(user.id, "btc").price_change_threshold == 2.0
        assert repo.get_for_asset(user.id, "ETH") is None

    def test_one_global_rule_per_user(self, repos, user):
        """Should reject a second global rule."""
        repos["rule"].create(AlertRule(user_id=user.id))
        with pytest.raises(sqlite3.IntegrityError):
            repos["rule"].create(AlertRule(user_id=user.id))

    def test_one_rule_per_asset(self, repos, user):
        """Should reject a second rule for the same asset."""
        repos["rule"].create(AlertRule(user_id=user.id, asset_symbol="BTC"))
        with pytest.raises(sqlite3.IntegrityError):
            repos["rule"].create(AlertRule(user_id=user.id, asset_symbol="BTC"))

    def test_round_trip_settings(self, repos, user):
        """Should preserve every setting."""
        rule = repos["rule"].create(
            AlertRule(
                user_id=user.id,
                sentiment_threshold=35,
                enable_narrative=False,
                frequency=AlertFrequency.DAILY,
                email_notifications=True,
                push_notifications=False,
            )
        )
        found = repos["rule"].get_by_id(rule.id)
        assert found.sentiment_threshold == 35
        assert found.enable_narrative is False
        assert found.frequency == AlertFrequency.DAILY
        assert found.email_notifications is True
        assert found.push_notifications is False

    def test_user_rules_global_first(self, repos, user):
        """Should list the global rule before asset rules."""
        repos["rule"].create(AlertRule(user_id=user.id, asset_symbol="ETH"))
        repos["rule"].create(AlertRule(user_id=user.id))
        rules = repos["rule"].get_user_rules(user.id)
        assert [r.asset_symbol for r in rules] == [None, "ETH"]


class TestSignalRepository:
    """Test signal log."""

    def _signal(self, symbol, when, strength=50):
        return Signal(
            asset_symbol=symbol,
            type=SignalKind.SENTIMENT,
            strength=strength,
            description=f"{symbol} social sentiment",
            timestamp=when,
            sources=[{"platform": "social", "count": 10}],
            magnitude=float(strength),
        )

    def test_create_and_get(self, repos, now):
        """Should store sources and timestamps faithfully."""
        signal = repos["signal"].create(self._signal("BTC", now))
        found = repos["signal"].get_by_id(signal.id)

        assert found.type == SignalKind.SENTIMENT
        assert found.sources == [{"platform": "social", "count": 10}]
        assert found.timestamp == now

    def test_list_newest_first(self, repos, now):
        """Should list signals for the given assets newest first."""
        repos["signal"].create(self._signal("BTC", now - timedelta(hours=2)))
        repos["signal"].create(self._signal("ETH", now - timedelta(hours=1)))
        repos["signal"].create(self._signal("SOL", now))

        signals = repos["signal"].list_for_assets(["btc", "eth"])
        assert [s.asset_symbol for s in signals] == ["ETH", "BTC"]
        assert repos["signal"].count_for_assets(["BTC", "ETH"]) == 2

    def test_list_no_assets(self, repos):
        """Should return nothing for an empty asset list."""
        assert repos["signal"].list_for_assets([]) == []
        assert repos["signal"].count_for_assets([]) == 0


class TestNotificationRepository:
    """Test notification storage and state transitions."""

    @pytest.fixture
    def user(self, repos):
        return repos["user"].create(User(email="test@example.com"))

    def _create(self, repos, user, when, symbol="BTC", group_id=None, priority=NotificationPriority.HIGH):
        return repos["notification"].create(
            Notification(
                user_id=user.id,
                signal_id=None,
                asset_symbol=symbol,
                title=f"{symbol} alert",
                message="message",
                priority=priority,
                sent_at=when,
                group_id=group_id,
            )
        )

    def test_mark_read_only_once(self, repos, user, now):
        """Should move unread to read and leave read alone."""
        n = self._create(repos, user, now)
        assert repos["notification"].mark_read(n.id, now) is True
        assert repos["notification"].mark_read(n.id, now + timedelta(minutes=1)) is False

        found = repos["notification"].get_by_id(n.id)
        assert found.state == NotificationState.READ
        assert found.read_at == now

    def test_archive_is_terminal(self, repos, user, now):
        """Should never move an archived notification back."""
        n = self._create(repos, user, now)
        assert repos["notification"].archive(n.id, now) is True
        assert repos["notification"].mark_read(n.id, now) is False
        assert repos["notification"].get_by_id(n.id).state == NotificationState.ARCHIVED

    def test_list_filters(self, repos, user, now):
        """Should filter by asset and priority and hide archived."""
        a = self._create(repos, user, now - timedelta(minutes=2), symbol="BTC")
        self._create(repos, user, now - timedelta(minutes=1), symbol="ETH", priority=NotificationPriority.LOW)
        c = self._create(repos, user, now, symbol="BTC")
        repos["notification"].archive(c.id, now)

        assert [n.id for n in repos["notification"].list_for_user(user.id, asset_symbol="btc")] == [a.id]
        low = repos["notification"].list_for_user(user.id, priority=NotificationPriority.LOW)
        assert [n.asset_symbol for n in low] == ["ETH"]
        everything = repos["notification"].list_for_user(user.id, include_archived=True)
        assert [n.id for n in everything][0] == c.id

    def test_unread_count_and_mark_all(self, repos, user, now):
        """Should count unread and mark them all read."""
        for i in range(3):
            self._create(repos, user, now + timedelta(seconds=i))
        assert repos["notification"].unread_count(user.id) == 3
        assert repos["notification"].mark_all_read(user.id, now) == 3
        assert repos["notification"].unread_count(user.id) == 0

    def test_find_recent_group(self, repos, user, now):
        """Should return the latest group within the window."""
        self._create(repos, user, now - timedelta(minutes=10), group_id="old")
        self._create(repos, user, now - timedelta(minutes=2), group_id="recent")

        assert repos["notification"].find_recent_group(user.id, "BTC", now - timedelta(minutes=5)) == "recent"
        assert repos["notification"].find_recent_group(user.id, "ETH", now - timedelta(minutes=5)) is None

    def test_create_grouped(self, repos, user, now):
        """Should join a recent group or start the given new one."""
        self._create(repos, user, now - timedelta(minutes=2), group_id="recent")
        since = now - timedelta(minutes=5)

        joined = repos["notification"].create_grouped(
            Notification(
                user_id=user.id,
                signal_id=None,
                asset_symbol="BTC",
                title="t",
                message="m",
                priority=NotificationPriority.LOW,
                sent_at=now,
            ),
            since,
            "fresh",
        )
        started = repos["notification"].create_grouped(
            Notification(
                user_id=user.id,
                signal_id=None,
                asset_symbol="ETH",
                title="t",
                message="m",
                priority=NotificationPriority.LOW,
                sent_at=now,
            ),
            since,
            "fresh",
        )

        assert joined.id is not None
        assert repos["notification"].get_by_id(joined.id).group_id == "recent"
        assert started.group_id == "fresh"


class TestDispatchWindowRepository:
    """Test the compare-and-swap window write."""

    def test_first_arm_inserts(self, repos, now):
        """Should arm a new key."""
        repo: DispatchWindowRepository = repos["window"]
        assert repo.try_arm(1, "BTC", SignalKind.PRICE, now, now + timedelta(hours=1)) is True

        window = repo.get(1, "btc", SignalKind.PRICE)
        assert window.last_fired_at == now
        assert window.window_end == now + timedelta(hours=1)

    def test_arm_while_cooling_fails(self, repos, now):
        """Should leave an open window untouched."""
        repo = repos["window"]
        repo.try_arm(1, "BTC", SignalKind.PRICE, now, now + timedelta(hours=1))
        later = now + timedelta(minutes=10)
        assert repo.try_arm(1, "BTC", SignalKind.PRICE, later, later + timedelta(hours=1)) is False
        assert repo.get(1, "BTC", SignalKind.PRICE).last_fired_at == now

    def test_arm_at_window_end_succeeds(self, repos, now):
        """Should rearm once the window has ended."""
        repo = repos["window"]
        end = now + timedelta(hours=1)
        repo.try_arm(1, "BTC", SignalKind.PRICE, now, end)
        assert repo.try_arm(1, "BTC", SignalKind.PRICE, end, end + timedelta(hours=1)) is True

    def test_keys_are_independent(self, repos, now):
        """Should throttle each kind and asset separately."""
        repo = repos["window"]
        end = now + timedelta(hours=1)
        assert repo.try_arm(1, "BTC", SignalKind.PRICE, now, end) is True
        assert repo.try_arm(1, "BTC", SignalKind.SENTIMENT, now, end) is True
        assert repo.try_arm(1, "ETH", SignalKind.PRICE, now, end) is True
        assert repo.try_arm(2, "BTC", SignalKind.PRICE, now, end) is True

    def test_release_matches_fire_time(self, repos, now):
        """Should only drop the window armed at the given time."""
        repo = repos["window"]
        repo.try_arm(1, "BTC", SignalKind.PRICE, now, now + timedelta(days=1))

        assert repo.release(1, "BTC", SignalKind.PRICE, now + timedelta(seconds=1)) is False
        assert repo.release(1, "btc", SignalKind.PRICE, now) is True
        assert repo.get(1, "BTC", SignalKind.PRICE) is None
