"""
Dispatch throttling.

Each (user, asset, signal kind) key is either idle or cooling. Admitting a
fire on a non-immediate rule arms a window; until the window ends further
fires for the key are suppressed.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from coinpulse.database.models import AlertFrequency, SignalKind, to_utc, utcnow
from coinpulse.database.repository import DispatchWindowRepository
from coinpulse.errors import PersistenceError, ThrottleConflictError

logger = logging.getLogger(__name__)

ThrottleKey = tuple[int, str, SignalKind]


class ThrottleState(Enum):
    """Per-key throttling state."""

    IDLE = "idle"
    COOLING = "cooling"


class KeyedLocks:
    """Arena of locks, one per key. A key's lock lives only while held or awaited."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class DispatchThrottler:
    """Enforces at most one delivery per key and window."""

    def __init__(self, window_repo: DispatchWindowRepository):
        self.window_repo = window_repo
        self._locks = KeyedLocks()

    def admit(
        self,
        user_id: int,
        asset_symbol: str,
        signal_kind: Union[SignalKind, str],
        frequency: Union[AlertFrequency, str],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Decide whether a fire may be delivered, arming the window if so.

        Args:
            user_id: Notification recipient
            asset_symbol: Asset the signal is about
            signal_kind: Kind of the signal
            frequency: Rule delivery frequency
            now: Evaluation time, defaults to the current time

        Returns:
            True if admitted, False while the key is cooling

        Raises:
            PersistenceError: If the window could not be written. The fire
                must then be treated as not admitted.
        """
        window = AlertFrequency(frequency).window
        if window is None:
            return True

        now = to_utc(now) if now else utcnow()
        key = self._key(user_id, asset_symbol, signal_kind)

        with self._locks.hold(key):
            try:
                admitted = self._arm(key, now, now + window)
            except ThrottleConflictError as e:
                logger.info(f"Throttle conflict on {self._label(key)}, suppressing: {e}")
                return False

        if not admitted:
            logger.debug(f"Suppressed {self._label(key)}: still cooling")
        return admitted

    def release(
        self,
        user_id: int,
        asset_symbol: str,
        signal_kind: Union[SignalKind, str],
        fired_at: datetime,
    ) -> bool:
        """
        Undo an admission whose notification was never stored, so the next
        fire for the key is admitted again.

        Only the window armed at `fired_at` is dropped. Returns True if a
        window was released.
        """
        key = self._key(user_id, asset_symbol, signal_kind)
        user_id, symbol, kind = key
        with self._locks.hold(key):
            try:
                released = self.window_repo.release(user_id, symbol, kind, to_utc(fired_at))
            except sqlite3.Error as e:
                logger.error(f"Could not release dispatch window {self._label(key)}: {e}")
                return False

        if released:
            logger.info(f"Released dispatch window {self._label(key)}")
        return released

    def state(
        self,
        user_id: int,
        asset_symbol: str,
        signal_kind: Union[SignalKind, str],
        now: Optional[datetime] = None,
    ) -> ThrottleState:
        """Current state of a key. Windows past their end read as idle."""
        now = to_utc(now) if now else utcnow()
        user_id, symbol, kind = self._key(user_id, asset_symbol, signal_kind)
        window = self.window_repo.get(user_id, symbol, kind)
        if window is not None and now < window.window_end:
            return ThrottleState.COOLING
        return ThrottleState.IDLE

    def _arm(self, key: ThrottleKey, now: datetime, window_end: datetime) -> bool:
        user_id, symbol, kind = key
        try:
            return self.window_repo.try_arm(user_id, symbol, kind, now, window_end)
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise ThrottleConflictError(str(e)) from e
            raise PersistenceError(f"Dispatch window write failed for {self._label(key)}: {e}") from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Dispatch window write failed for {self._label(key)}: {e}") from e

    def _key(
        self, user_id: int, asset_symbol: str, signal_kind: Union[SignalKind, str]
    ) -> ThrottleKey:
        return (user_id, asset_symbol.upper(), SignalKind(signal_kind))

    def _label(self, key: ThrottleKey) -> str:
        user_id, symbol, kind = key
        return f"user {user_id}/{symbol}/{kind.value}"
