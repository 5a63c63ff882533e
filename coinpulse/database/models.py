"""
Data models for CoinPulse.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional


class SignalKind(str, Enum):
    """Kind of observation, and of the signal scored from it."""

    PRICE = "price"
    SENTIMENT = "sentiment"
    NARRATIVE = "narrative"


class AlertFrequency(str, Enum):
    """How often a rule may deliver for the same asset and signal kind."""

    IMMEDIATE = "immediate"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def window(self) -> Optional[timedelta]:
        """Cooldown length, None for immediate delivery."""
        return _FREQUENCY_WINDOWS[self]


_FREQUENCY_WINDOWS = {
    AlertFrequency.IMMEDIATE: None,
    AlertFrequency.HOURLY: timedelta(hours=1),
    AlertFrequency.DAILY: timedelta(hours=24),
    AlertFrequency.WEEKLY: timedelta(days=7),
}


class NotificationPriority(str, Enum):
    """Notification priority levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationState(str, Enum):
    """Notification read state. Transitions only move forward."""

    UNREAD = "unread"
    READ = "read"
    ARCHIVED = "archived"


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Convert to aware UTC. Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Observation:
    """A single normalized external data point."""

    asset_symbol: str
    kind: SignalKind
    magnitude: float
    occurred_at: datetime
    source_breakdown: tuple = ()
    raw_value: Optional[float] = None  # provider value before normalization
    detail: Optional[str] = None  # headline for narrative observations


@dataclass
class Signal:
    """Scored, user-facing event. Never mutated once persisted."""

    asset_symbol: str
    type: SignalKind
    strength: int
    description: str
    timestamp: datetime
    sources: list[dict[str, Any]] = field(default_factory=list)
    magnitude: Optional[float] = None
    id: Optional[int] = None


@dataclass
class User:
    """User with delivery addresses."""

    id: Optional[int] = None
    email: Optional[str] = None
    push_webhook_url: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class UserWatchlist:
    """Asset watched by a user."""

    user_id: int
    asset_symbol: str
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class AlertRule:
    """User's alert configuration. asset_symbol None = global rule."""

    user_id: Optional[int]
    asset_symbol: Optional[str] = None
    sentiment_threshold: int = 20
    price_change_threshold: float = 5.0
    enable_sentiment: bool = True
    enable_price: bool = True
    enable_narrative: bool = True
    frequency: AlertFrequency = AlertFrequency.IMMEDIATE
    email_notifications: bool = False
    push_notifications: bool = True
    id: Optional[int] = None

    @property
    def is_global(self) -> bool:
        return self.asset_symbol is None

    def is_enabled(self, kind: SignalKind) -> bool:
        """Whether this rule alerts on the given signal kind."""
        if kind == SignalKind.PRICE:
            return self.enable_price
        if kind == SignalKind.SENTIMENT:
            return self.enable_sentiment
        return self.enable_narrative


@dataclass
class Notification:
    """Persisted delivery record."""

    user_id: int
    signal_id: Optional[int]
    title: str
    message: str
    priority: NotificationPriority
    sent_at: datetime
    state: NotificationState = NotificationState.UNREAD
    read_at: Optional[datetime] = None
    group_id: Optional[str] = None
    asset_symbol: Optional[str] = None
    delivered_channels: list[str] = field(default_factory=list)
    id: Optional[int] = None


@dataclass
class DispatchWindow:
    """Throttling bookkeeping for one (user, asset, signal kind) key."""

    user_id: int
    asset_symbol: str
    signal_kind: SignalKind
    last_fired_at: datetime
    window_end: datetime
