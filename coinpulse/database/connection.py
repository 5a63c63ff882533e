"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


class Database:
    """SQLite database connection manager.

    One connection is shared between worker threads. Reads go straight to
    the connection; writes run inside ``transaction()``, which holds a
    connection-wide lock so statements from different threads never end up
    in the same transaction.
    """

    def __init__(self, db_path: str, timeout: float = 5.0):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
            timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = db_path
        self.timeout = timeout
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(
            self.db_path,
            timeout=self.timeout,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        # Enable foreign keys
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run a block of writes atomically; commit on success, roll back on error."""
        with self._lock:
            connection = self.connection
            cursor = connection.cursor()
            try:
                yield cursor
                connection.commit()
            except BaseException:
                connection.rollback()
                raise

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT,
                    push_webhook_url TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_watchlist (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    asset_symbol TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                    UNIQUE (user_id, asset_symbol)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alert_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    asset_symbol TEXT,
                    sentiment_threshold INTEGER NOT NULL DEFAULT 20,
                    price_change_threshold REAL NOT NULL DEFAULT 5.0,
                    enable_sentiment INTEGER NOT NULL DEFAULT 1,
                    enable_price INTEGER NOT NULL DEFAULT 1,
                    enable_narrative INTEGER NOT NULL DEFAULT 1,
                    frequency TEXT NOT NULL DEFAULT 'immediate',
                    email_notifications INTEGER NOT NULL DEFAULT 0,
                    push_notifications INTEGER NOT NULL DEFAULT 1,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS signals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    asset_symbol TEXT NOT NULL,
                    type TEXT NOT NULL,
                    strength INTEGER NOT NULL,
                    description TEXT NOT NULL,
                    sources TEXT NOT NULL,
                    magnitude REAL,
                    timestamp TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    signal_id INTEGER,
                    asset_symbol TEXT,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'unread',
                    sent_at TIMESTAMP NOT NULL,
                    read_at TIMESTAMP,
                    group_id TEXT,
                    delivered_channels TEXT NOT NULL DEFAULT '[]',
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
                    FOREIGN KEY (signal_id) REFERENCES signals(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS dispatch_windows (
                    user_id INTEGER NOT NULL,
                    asset_symbol TEXT NOT NULL,
                    signal_kind TEXT NOT NULL,
                    last_fired_at TIMESTAMP NOT NULL,
                    window_end TIMESTAMP NOT NULL,
                    PRIMARY KEY (user_id, asset_symbol, signal_kind)
                )
            """)

            # One global rule per user, one rule per (user, asset)
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_rules_global
                ON alert_rules(user_id) WHERE asset_symbol IS NULL
            """)
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_rules_asset
                ON alert_rules(user_id, asset_symbol) WHERE asset_symbol IS NOT NULL
            """)

            # Indexes for common queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_watchlist_asset
                ON user_watchlist(asset_symbol)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_signals_asset_time
                ON signals(asset_symbol, timestamp)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_user_state
                ON notifications(user_id, state, sent_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_user_asset
                ON notifications(user_id, asset_symbol, sent_at)
            """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
