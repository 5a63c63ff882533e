"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timezone

import pytest

from coinpulse.database.connection import Database
from coinpulse.database.repository import (
    AlertRuleRepository,
    DispatchWindowRepository,
    NotificationRepository,
    SignalRepository,
    UserRepository,
    WatchlistRepository,
)


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def repos(db):
    """Create all repositories."""
    return {
        "user": UserRepository(db),
        "watchlist": WatchlistRepository(db),
        "rule": AlertRuleRepository(db),
        "signal": SignalRepository(db),
        "notification": NotificationRepository(db),
        "window": DispatchWindowRepository(db),
    }


@pytest.fixture
def now():
    """Fixed evaluation time."""
    return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_price_payload():
    """Sample price provider payload."""
    return {
        "symbol": "btc",
        "currentPrice": 61_250.0,
        "percentChange24h": -6.2,
        "asOf": "2024-03-01T11:59:00Z",
    }


@pytest.fixture
def sample_sentiment_payload():
    """Sample sentiment provider payload."""
    return {
        "symbol": "ETH",
        "sentimentScore": 0.15,
        "sampleCount": 240,
        "asOf": "2024-03-01T11:55:00Z",
    }


@pytest.fixture
def sample_news_payload():
    """Sample news provider payload."""
    return {
        "symbol": "SOL",
        "relevance": 0.82,
        "headline": "Major exchange lists SOL perpetuals",
        "asOf": "2024-03-01T11:50:00Z",
    }


@pytest.fixture
def sample_push_webhook_url():
    """Sample push webhook URL for testing."""
    return "https://push.example.com/hooks/abc123"


@pytest.fixture
def sample_smtp_config():
    """Sample SMTP configuration for testing."""
    return {
        "smtp_host": "smtp.gmail.com",
        "smtp_port": 587,
        "smtp_user": "test@gmail.com",
        "smtp_password": "test-app-password",
        "from_address": "alerts@coinpulse.app",
    }
