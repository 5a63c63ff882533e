"""
Signal scoring.

Maps observation magnitudes onto a 0-100 strength. Scoring is policy-free:
a zero-magnitude observation still produces a signal, it is the evaluator
that decides whether anyone hears about it.
"""

import math

from coinpulse.database.models import Observation, Signal, SignalKind

__all__ = ["SignalScorer", "clamp_strength", "strength_level"]

STRENGTH_LEVELS = [
    (85, "Very Strong"),
    (70, "Strong"),
    (50, "Medium"),
    (30, "Weak"),
]

# Sentiment polarity beyond this reads as a clear mood
SENTIMENT_MOOD_CUTOFF = 0.6


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def clamp_strength(value: float) -> int:
    """Round and clamp a raw strength to 0..100."""
    return max(0, min(100, _round_half_up(value)))


def strength_level(strength: int) -> str:
    """Human-readable label for a strength value."""
    for floor, label in STRENGTH_LEVELS:
        if strength >= floor:
            return label
    return "Very Weak"


class SignalScorer:
    """Converts observations into scored signals."""

    def score(self, observation: Observation) -> Signal:
        """
        Score an observation.

        Args:
            observation: Normalized observation

        Returns:
            Unpersisted Signal (id is None)
        """
        kind = SignalKind(observation.kind)
        sources = [dict(entry) for entry in observation.source_breakdown]

        if kind == SignalKind.PRICE:
            strength = min(100, _round_half_up(abs(observation.magnitude) * 10))
            description = self._describe_price(observation)
            # Keep the signed percent change with the provenance
            sources = self._with_price_source(sources, observation.magnitude)
        elif kind == SignalKind.SENTIMENT:
            strength = clamp_strength(observation.magnitude)
            description = self._describe_sentiment(observation)
        else:
            relevance = max(0.0, min(1.0, observation.magnitude))
            strength = clamp_strength(relevance * 100)
            description = self._describe_narrative(observation)

        return Signal(
            asset_symbol=observation.asset_symbol,
            type=kind,
            strength=strength,
            description=description,
            sources=sources,
            magnitude=observation.magnitude,
            timestamp=observation.occurred_at,
        )

    def _with_price_source(self, sources: list[dict], change_pct: float) -> list[dict]:
        for entry in sources:
            if entry.get("platform") == "price":
                entry["price_change"] = change_pct
                return sources
        sources.append({"platform": "price", "count": 1, "price_change": change_pct})
        return sources

    def _describe_price(self, observation: Observation) -> str:
        direction = "rose" if observation.magnitude >= 0 else "fell"
        return (
            f"{observation.asset_symbol} price {direction} "
            f"{observation.magnitude:+.2f}% over the last 24 hours"
        )

    def _describe_sentiment(self, observation: Observation) -> str:
        polarity = observation.raw_value or 0.0
        if polarity > SENTIMENT_MOOD_CUTOFF:
            mood = "clearly bullish"
        elif polarity < -SENTIMENT_MOOD_CUTOFF:
            mood = "clearly bearish"
        elif polarity > 0:
            mood = "leaning bullish"
        elif polarity < 0:
            mood = "leaning bearish"
        else:
            mood = "neutral"
        return (
            f"{observation.asset_symbol} social sentiment is {mood} "
            f"({observation.magnitude:.0f}/100)"
        )

    def _describe_narrative(self, observation: Observation) -> str:
        if observation.detail:
            return (
                f"{observation.asset_symbol} narrative: {observation.detail} "
                f"(relevance {observation.magnitude:.2f})"
            )
        return f"{observation.asset_symbol} narrative relevance {observation.magnitude:.2f}"
