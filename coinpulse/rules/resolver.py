"""
Alert rule resolution.

Precedence is strict: the user's rule for the asset, else the user's global
rule, else the built-in default. The first rule found is used as a whole;
fields are never merged across levels.
"""

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Optional

from coinpulse.database.models import AlertFrequency, AlertRule
from coinpulse.database.repository import AlertRuleRepository
from coinpulse.errors import ResolutionTimeoutError

logger = logging.getLogger(__name__)


def default_rule(user_id: Optional[int] = None) -> AlertRule:
    """The built-in rule used when a user has configured nothing."""
    return AlertRule(
        user_id=user_id,
        asset_symbol=None,
        sentiment_threshold=20,
        price_change_threshold=5.0,
        enable_sentiment=True,
        enable_price=True,
        enable_narrative=True,
        frequency=AlertFrequency.IMMEDIATE,
        email_notifications=False,
        push_notifications=True,
    )


class AlertRuleResolver:
    """Finds the rule that applies to a (user, asset) pair."""

    def __init__(
        self,
        rule_repo: AlertRuleRepository,
        timeout_seconds: Optional[float] = 2.0,
        max_workers: int = 4,
    ):
        """
        Initialize resolver.

        Args:
            rule_repo: Rule storage
            timeout_seconds: Budget for one lookup; None waits indefinitely
            max_workers: Threads available for bounded lookups
        """
        self.rule_repo = rule_repo
        self.timeout_seconds = timeout_seconds
        self._executor: Optional[ThreadPoolExecutor] = None
        self._max_workers = max_workers

    def resolve(self, user_id: int, asset_symbol: str) -> AlertRule:
        """
        Resolve the effective rule. Never raises for lookup failures.

        Args:
            user_id: Rule owner
            asset_symbol: Asset the signal is about

        Returns:
            The asset rule, the global rule, or the default rule
        """
        symbol = asset_symbol.upper()
        try:
            rule = self._lookup_bounded(user_id, symbol)
        except ResolutionTimeoutError as e:
            logger.warning(f"Rule lookup timed out, using default rule: {e}")
            return default_rule(user_id)
        except sqlite3.Error as e:
            logger.warning(
                f"Rule lookup failed for user {user_id}/{symbol}, using default rule: {e}"
            )
            return default_rule(user_id)

        if rule is None:
            return default_rule(user_id)
        return rule

    def _lookup(self, user_id: int, asset_symbol: str) -> Optional[AlertRule]:
        rule = self.rule_repo.get_for_asset(user_id, asset_symbol)
        if rule is not None:
            return rule
        return self.rule_repo.get_global(user_id)

    def _lookup_bounded(self, user_id: int, asset_symbol: str) -> Optional[AlertRule]:
        if self.timeout_seconds is None:
            return self._lookup(user_id, asset_symbol)

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="rule-lookup"
            )
        future = self._executor.submit(self._lookup, user_id, asset_symbol)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise ResolutionTimeoutError(
                f"user {user_id}/{asset_symbol} exceeded {self.timeout_seconds}s"
            )

    def close(self) -> None:
        """Release lookup threads."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
