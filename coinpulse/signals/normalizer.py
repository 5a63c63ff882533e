"""
Observation normalizer.

Turns raw provider payloads (price ticks, sentiment batches, news items)
into uniform Observation records.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from coinpulse.database.models import Observation, SignalKind, to_utc, utcnow
from coinpulse.errors import MalformedInputError

logger = logging.getLogger(__name__)

SYMBOL_KEYS = ("symbol", "assetSymbol", "asset_symbol")
TIMESTAMP_KEYS = ("asOf", "as_of", "occurredAt", "timestamp")

MAGNITUDE_KEYS = {
    SignalKind.PRICE: ("percentChange24h", "percent_change_24h", "price_change_percentage_24h"),
    SignalKind.SENTIMENT: ("sentimentScore", "sentiment_score", "score"),
    SignalKind.NARRATIVE: ("relevance", "relevance_score"),
}

DEFAULT_PLATFORM = {
    SignalKind.PRICE: "price",
    SignalKind.SENTIMENT: "social",
    SignalKind.NARRATIVE: "news",
}


def _first_present(payload: dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _parse_symbol(payload: dict[str, Any]) -> str:
    symbol = _first_present(payload, SYMBOL_KEYS)
    if not isinstance(symbol, str) or not symbol.strip():
        raise MalformedInputError("Missing asset symbol")
    return symbol.strip().upper()


def _parse_number(value: Any, field_name: str) -> float:
    if value is None:
        raise MalformedInputError(f"Missing {field_name}")
    # bool is an int subclass but never a meaningful magnitude
    if isinstance(value, bool):
        raise MalformedInputError(f"Non-numeric {field_name}: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedInputError(f"Non-numeric {field_name}: {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise MalformedInputError(f"Non-finite {field_name}: {value!r}")
    return number


def _parse_timestamp(value: Union[datetime, str, int, float, None]) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, bool):
        raise MalformedInputError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedInputError(f"Invalid timestamp: {value!r}")
    if isinstance(value, str):
        text = value.strip()
        # fromisoformat only learned the Z suffix in 3.11
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError:
            raise MalformedInputError(f"Invalid timestamp: {value!r}")
    raise MalformedInputError(f"Invalid timestamp: {value!r}")


def _parse_sources(payload: dict[str, Any], kind: SignalKind) -> tuple:
    sources = payload.get("sources")
    if isinstance(sources, list):
        breakdown = []
        for entry in sources:
            if isinstance(entry, dict) and entry.get("platform"):
                try:
                    count = int(entry.get("count") or 0)
                except (TypeError, ValueError):
                    raise MalformedInputError(f"Invalid source count: {entry!r}")
                breakdown.append({"platform": str(entry["platform"]), "count": count})
        if breakdown:
            return tuple(breakdown)

    count = 1
    if kind == SignalKind.SENTIMENT:
        sample_count = _first_present(payload, ("sampleCount", "sample_count"))
        if isinstance(sample_count, (int, float)) and not isinstance(sample_count, bool):
            count = int(sample_count)
    return ({"platform": DEFAULT_PLATFORM[kind], "count": count},)


def normalize(raw_payload: dict[str, Any], kind: Union[SignalKind, str]) -> Observation:
    """
    Normalize a provider payload into an Observation.

    Args:
        raw_payload: Provider data, e.g. {"symbol": "BTC", "percentChange24h": -6.2}
        kind: Observation kind

    Returns:
        Immutable Observation

    Raises:
        MalformedInputError: If required fields are missing or invalid
    """
    if not isinstance(raw_payload, dict):
        raise MalformedInputError(f"Payload must be a mapping, got {type(raw_payload).__name__}")
    try:
        kind = SignalKind(kind)
    except ValueError:
        raise MalformedInputError(f"Unknown observation kind: {kind!r}")

    symbol = _parse_symbol(raw_payload)
    raw_value = _parse_number(
        _first_present(raw_payload, MAGNITUDE_KEYS[kind]), f"{kind.value} magnitude"
    )
    occurred_at = _parse_timestamp(_first_present(raw_payload, TIMESTAMP_KEYS))
    detail: Optional[str] = None

    if kind == SignalKind.PRICE:
        magnitude = raw_value
    elif kind == SignalKind.SENTIMENT:
        if not -1.0 <= raw_value <= 1.0:
            raise MalformedInputError(f"Sentiment score out of range: {raw_value}")
        # Polarity -1..1 onto the 0..100 strength scale
        magnitude = abs(raw_value) * 100
    else:
        if not 0.0 <= raw_value <= 1.0:
            raise MalformedInputError(f"Relevance out of range: {raw_value}")
        magnitude = raw_value
        headline = raw_payload.get("headline")
        detail = str(headline).strip() if headline else None

    return Observation(
        asset_symbol=symbol,
        kind=kind,
        magnitude=magnitude,
        occurred_at=occurred_at,
        source_breakdown=_parse_sources(raw_payload, kind),
        raw_value=raw_value,
        detail=detail,
    )


def normalize_batch(
    payloads: Iterable[dict[str, Any]], kind: Union[SignalKind, str]
) -> tuple[list[Observation], list[tuple[int, MalformedInputError]]]:
    """
    Normalize many payloads, dropping the malformed ones.

    Returns:
        (observations, errors) where errors holds (index, error) per dropped payload
    """
    label = getattr(kind, "value", kind)
    observations = []
    errors = []
    for index, payload in enumerate(payloads):
        try:
            observations.append(normalize(payload, kind))
        except MalformedInputError as e:
            logger.warning(f"Dropping malformed {label} payload #{index}: {e}")
            errors.append((index, e))
    return observations, errors
