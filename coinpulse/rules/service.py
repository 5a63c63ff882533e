"""
Alert rule write path: query, customize, reset and delete rules.
"""

import logging
import math
import sqlite3
from dataclasses import replace
from typing import Any, Optional

from coinpulse.database.models import AlertFrequency, AlertRule
from coinpulse.database.repository import AlertRuleRepository
from coinpulse.errors import RuleValidationError
from .resolver import default_rule

logger = logging.getLogger(__name__)

SENTIMENT_THRESHOLD_RANGE = (0, 100)
PRICE_CHANGE_THRESHOLD_RANGE = (0.1, 50.0)

SETTING_FIELDS = (
    "sentiment_threshold",
    "price_change_threshold",
    "enable_sentiment",
    "enable_price",
    "enable_narrative",
    "frequency",
    "email_notifications",
    "push_notifications",
)

BOOLEAN_FIELDS = (
    "enable_sentiment",
    "enable_price",
    "enable_narrative",
    "email_notifications",
    "push_notifications",
)


def validate_rule(rule: AlertRule) -> AlertRule:
    """
    Check rule settings against the allowed ranges.

    Returns:
        The rule, with frequency coerced to AlertFrequency

    Raises:
        RuleValidationError: If any setting is out of range
    """
    threshold = rule.sentiment_threshold
    low, high = SENTIMENT_THRESHOLD_RANGE
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise RuleValidationError(f"sentiment_threshold must be an integer, got {threshold!r}")
    if not low <= threshold <= high:
        raise RuleValidationError(f"sentiment_threshold must be within {low}..{high}")

    change = rule.price_change_threshold
    low, high = PRICE_CHANGE_THRESHOLD_RANGE
    if isinstance(change, bool) or not isinstance(change, (int, float)) or math.isnan(change):
        raise RuleValidationError(f"price_change_threshold must be a number, got {change!r}")
    if not low <= change <= high:
        raise RuleValidationError(f"price_change_threshold must be within {low}..{high}")

    for name in BOOLEAN_FIELDS:
        if not isinstance(getattr(rule, name), bool):
            raise RuleValidationError(f"{name} must be true or false")

    try:
        frequency = AlertFrequency(rule.frequency)
    except ValueError:
        raise RuleValidationError(f"Unknown frequency: {rule.frequency!r}")

    return replace(rule, price_change_threshold=float(change), frequency=frequency)


class AlertRuleService:
    """Manages global and per-asset alert rules for users."""

    def __init__(self, rule_repo: AlertRuleRepository):
        self.rule_repo = rule_repo

    def get_global_rule(self, user_id: int) -> AlertRule:
        """The user's global rule, or the default if never customized."""
        return self.rule_repo.get_global(user_id) or default_rule(user_id)

    def get_asset_rule(self, user_id: int, asset_symbol: str) -> Optional[AlertRule]:
        """The user's rule for one asset, if any."""
        return self.rule_repo.get_for_asset(user_id, asset_symbol)

    def list_rules(self, user_id: int) -> list[AlertRule]:
        """All stored rules of a user, global first."""
        return self.rule_repo.get_user_rules(user_id)

    def update_global_rule(self, user_id: int, **changes: Any) -> AlertRule:
        """
        Customize the user's global rule, creating it from defaults on first use.

        Raises:
            RuleValidationError: On unknown fields or out-of-range values
        """
        base = self.get_global_rule(user_id)
        rule = self._apply(base, changes)
        return self._save(rule)

    def reset_global_rule(self, user_id: int) -> AlertRule:
        """Restore the global rule to default settings. Global rules are never deleted."""
        existing = self.rule_repo.get_global(user_id)
        rule = default_rule(user_id)
        if existing is None:
            return rule
        rule.id = existing.id
        self.rule_repo.update(rule)
        logger.info(f"Reset global rule for user {user_id}")
        return rule

    def update_asset_rule(self, user_id: int, asset_symbol: str, **changes: Any) -> AlertRule:
        """
        Customize the rule for one asset.

        The first customization copies the user's global rule (or the
        defaults) and applies the changes on top.

        Raises:
            RuleValidationError: On unknown fields or out-of-range values
        """
        symbol = asset_symbol.strip().upper()
        if not symbol:
            raise RuleValidationError("Asset symbol is required")

        base = self.rule_repo.get_for_asset(user_id, symbol)
        if base is None:
            base = replace(self.get_global_rule(user_id), id=None, asset_symbol=symbol)
        rule = self._apply(base, changes)
        return self._save(rule)

    def delete_asset_rule(self, user_id: int, asset_symbol: str) -> bool:
        """Delete an asset rule so the user falls back to the global rule."""
        existing = self.rule_repo.get_for_asset(user_id, asset_symbol)
        if existing is None:
            return False
        self.rule_repo.delete(existing.id)
        logger.info(f"Deleted {existing.asset_symbol} rule for user {user_id}")
        return True

    def _apply(self, base: AlertRule, changes: dict[str, Any]) -> AlertRule:
        unknown = set(changes) - set(SETTING_FIELDS)
        if unknown:
            raise RuleValidationError(f"Unknown rule settings: {', '.join(sorted(unknown))}")
        return validate_rule(replace(base, **changes))

    def _save(self, rule: AlertRule) -> AlertRule:
        if rule.id is not None:
            self.rule_repo.update(rule)
            return rule

        try:
            return self.rule_repo.create(rule)
        except sqlite3.IntegrityError:
            # Created concurrently; update the winner in place
            if rule.asset_symbol is None:
                existing = self.rule_repo.get_global(rule.user_id)
            else:
                existing = self.rule_repo.get_for_asset(rule.user_id, rule.asset_symbol)
            if existing is None:
                raise
            rule.id = existing.id
            self.rule_repo.update(rule)
            return rule
