"""
Threshold evaluation.
"""

from dataclasses import dataclass

from coinpulse.database.models import AlertRule, Signal, SignalKind

__all__ = ["Decision", "ThresholdEvaluator"]

REASON_DISABLED = "disabled"
REASON_BELOW_THRESHOLD = "below_threshold"
REASON_THRESHOLD_MET = "threshold_met"


@dataclass(frozen=True)
class Decision:
    """Outcome of comparing a signal with a rule."""

    fire: bool
    reason: str


class ThresholdEvaluator:
    """Compares signals against alert rules. Stateless."""

    def evaluate(self, signal: Signal, rule: AlertRule) -> Decision:
        """
        Decide whether a rule fires for a signal.

        Comparisons are inclusive: a signal exactly at the threshold fires.

        Args:
            signal: Scored signal
            rule: Resolved alert rule

        Returns:
            Decision with fire flag and reason
        """
        kind = SignalKind(signal.type)
        if not rule.is_enabled(kind):
            return Decision(fire=False, reason=REASON_DISABLED)

        if kind == SignalKind.PRICE:
            met = abs(self.price_change_pct(signal)) >= rule.price_change_threshold
        else:
            met = signal.strength >= rule.sentiment_threshold

        if met:
            return Decision(fire=True, reason=REASON_THRESHOLD_MET)
        return Decision(fire=False, reason=REASON_BELOW_THRESHOLD)

    def price_change_pct(self, signal: Signal) -> float:
        """
        Percent change behind a price signal.

        Uses the stored magnitude, then the price source entry; only signals
        carrying neither fall back to inverting the strength.
        """
        if signal.magnitude is not None:
            return signal.magnitude
        for source in signal.sources:
            if source.get("platform") == "price" and source.get("price_change") is not None:
                return float(source["price_change"])
        return signal.strength / 10
