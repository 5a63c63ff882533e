"""
Notification sink tests.
"""

import sqlite3
import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from coinpulse.database.models import (
    AlertRule,
    NotificationPriority,
    NotificationState,
    Signal,
    SignalKind,
    User,
)
from coinpulse.dispatch.sink import NotificationSink, priority_for, title_for
from coinpulse.errors import PersistenceError
from coinpulse.notifiers.base import NotificationResult


def make_notifier(channel, success=True, error=None):
    notifier = Mock()
    notifier.channel = channel
    notifier.send.return_value = NotificationResult(success=success, channel=channel, error=error)
    return notifier


@pytest.fixture
def user(repos, sample_push_webhook_url):
    return repos["user"].create(
        User(email="test@example.com", push_webhook_url=sample_push_webhook_url)
    )


@pytest.fixture
def signal(repos, now):
    return repos["signal"].create(
        Signal(
            asset_symbol="BTC",
            type=SignalKind.PRICE,
            strength=62,
            description="BTC price fell -6.20% over the last 24 hours",
            timestamp=now,
            sources=[{"platform": "price", "count": 1, "price_change": -6.2}],
            magnitude=-6.2,
        )
    )


@pytest.fixture
def push():
    return make_notifier("push")


@pytest.fixture
def sink(repos, push):
    return NotificationSink(repos["notification"], repos["user"], notifiers=[push])


class TestHelpers:
    """Test title and priority helpers."""

    @pytest.mark.parametrize(
        "strength,priority",
        [
            (100, NotificationPriority.CRITICAL),
            (85, NotificationPriority.CRITICAL),
            (70, NotificationPriority.HIGH),
            (62, NotificationPriority.MEDIUM),
            (49, NotificationPriority.LOW),
        ],
    )
    def test_priority_for(self, strength, priority):
        """Should map strength onto priority."""
        assert priority_for(strength) == priority

    def test_price_titles(self, signal):
        """Should title price signals by direction."""
        assert title_for(signal) == "BTC price drop alert"
        signal.magnitude = 4.0
        assert title_for(signal) == "BTC price surge alert"

    def test_sentiment_title(self, now):
        """Should title other signals by strength level."""
        signal = Signal("ETH", SignalKind.SENTIMENT, 72, "desc", now)
        assert title_for(signal) == "ETH strong sentiment shift"


class TestDispatch:
    """Test persisting and delivering notifications."""

    def test_persists_unread_notification(self, sink, repos, user, signal, now):
        """Should store an unread notification linked to the signal."""
        notification = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)

        stored = repos["notification"].get_by_id(notification.id)
        assert stored.state == NotificationState.UNREAD
        assert stored.signal_id == signal.id
        assert stored.asset_symbol == "BTC"
        assert stored.priority == NotificationPriority.MEDIUM
        assert stored.title == "BTC price drop alert"
        assert stored.message == signal.description
        assert stored.sent_at == now
        assert stored.group_id

    def test_delivers_to_rule_channels(self, sink, repos, push, user, signal, now):
        """Should push by default and record the delivery."""
        notification = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)

        push.send.assert_called_once()
        recipient, payload = push.send.call_args[0]
        assert recipient.push_webhook_url == user.push_webhook_url
        assert payload.notification_id == notification.id
        assert payload.data["strength"] == 62
        assert repos["notification"].get_by_id(notification.id).delivered_channels == ["push"]

    def test_no_channels_requested(self, sink, push, user, signal, now):
        """Should only persist when the rule disables both channels."""
        rule = AlertRule(user_id=user.id, push_notifications=False)
        notification = sink.dispatch(user.id, signal, rule, now)

        assert notification.id is not None
        push.send.assert_not_called()

    def test_email_channel(self, repos, push, user, signal, now):
        """Should also email when the rule asks for it."""
        email = make_notifier("email")
        sink = NotificationSink(repos["notification"], repos["user"], notifiers=[push, email])
        rule = AlertRule(user_id=user.id, email_notifications=True)

        notification = sink.dispatch(user.id, signal, rule, now)

        email.send.assert_called_once()
        assert notification.delivered_channels == ["push", "email"]

    def test_channel_failure_keeps_notification(self, repos, user, signal, now, caplog):
        """Should keep the stored notification when delivery fails."""
        failing = make_notifier("push", success=False, error="HTTP 500: oops")
        sink = NotificationSink(repos["notification"], repos["user"], notifiers=[failing])

        notification = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)

        stored = repos["notification"].get_by_id(notification.id)
        assert stored is not None
        assert stored.delivered_channels == []
        assert "not delivered" in caplog.text

    def test_channel_exception_is_contained(self, repos, user, signal, now):
        """Should not let a crashing channel escape dispatch."""
        crashing = make_notifier("push")
        crashing.send.side_effect = RuntimeError("boom")
        sink = NotificationSink(repos["notification"], repos["user"], notifiers=[crashing])

        notification = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)
        assert notification.id is not None

    def test_persist_failure_raises(self, user, signal, now, push):
        """Should raise PersistenceError and deliver nothing when storage fails."""
        repo = Mock()
        repo.create_grouped.side_effect = sqlite3.OperationalError("disk full")
        sink = NotificationSink(repo, Mock(), notifiers=[push])

        with pytest.raises(PersistenceError):
            sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)
        push.send.assert_not_called()


class TestGrouping:
    """Test notification grouping per asset."""

    def test_groups_within_window(self, sink, user, signal, now):
        """Should share a group ID within five minutes."""
        first = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)
        second = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now + timedelta(minutes=3))
        assert first.group_id == second.group_id

    def test_new_group_after_window(self, sink, user, signal, now):
        """Should start a new group after the window."""
        first = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)
        later = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now + timedelta(minutes=10))
        assert first.group_id != later.group_id

    def test_concurrent_dispatches_share_group(self, sink, user, signal, now):
        """Should put simultaneous notifications for one asset in one group."""
        barrier = threading.Barrier(6)
        groups = []

        def fire():
            barrier.wait()
            groups.append(sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now).group_id)

        threads = [threading.Thread(target=fire) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(groups) == 6
        assert len(set(groups)) == 1


class TestReadState:
    """Test read, read-all and archive."""

    def test_mark_read_idempotent(self, sink, user, signal, now):
        """Should mark read once and keep the first read time."""
        n = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)

        first = sink.mark_read(n.id, now + timedelta(minutes=1))
        second = sink.mark_read(n.id, now + timedelta(minutes=2))

        assert first.state == NotificationState.READ
        assert second.state == NotificationState.READ
        assert second.read_at == now + timedelta(minutes=1)
        assert sink.unread_count(user.id) == 0

    def test_mark_read_missing(self, sink):
        """Should return None for unknown notifications."""
        assert sink.mark_read(999) is None

    def test_mark_all_read(self, sink, user, signal, now):
        """Should mark every unread notification read."""
        for minute in range(3):
            sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now + timedelta(minutes=minute))

        assert sink.unread_count(user.id) == 3
        assert sink.mark_all_read(user.id, now) == 3
        assert sink.unread_count(user.id) == 0

    def test_archive(self, sink, user, signal, now):
        """Should hide archived notifications from the default listing."""
        n = sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now)
        archived = sink.archive(n.id, now)

        assert archived.state == NotificationState.ARCHIVED
        assert sink.list_notifications(user.id) == []
        assert len(sink.list_notifications(user.id, include_archived=True)) == 1

    def test_pagination(self, sink, user, signal, now):
        """Should page newest first."""
        created = [
            sink.dispatch(user.id, signal, AlertRule(user_id=user.id), now + timedelta(minutes=m))
            for m in range(5)
        ]
        page1 = sink.list_notifications(user.id, page=1, limit=2)
        page3 = sink.list_notifications(user.id, page=3, limit=2)

        assert [n.id for n in page1] == [created[4].id, created[3].id]
        assert [n.id for n in page3] == [created[0].id]
