"""
Provider feeds: Yahoo Finance prices, and JSON sentiment and news endpoints.

Feeds yield raw payload dicts in the provider contract shape; turning them
into observations is the normalizer's job.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import requests
import yfinance as yf

from coinpulse.database.models import to_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class PriceQuote:
    """Current price and 24 hour change for one asset."""

    symbol: str
    current_price: float
    percent_change_24h: float
    as_of: datetime

    def to_payload(self) -> dict[str, Any]:
        """Provider payload for the normalizer."""
        return {
            "symbol": self.symbol,
            "currentPrice": self.current_price,
            "percentChange24h": self.percent_change_24h,
            "asOf": self.as_of,
        }


class PriceFeed:
    """Fetches crypto prices from Yahoo Finance."""

    def __init__(
        self,
        quote_currency: str = "USD",
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.quote_currency = quote_currency
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def yahoo_ticker(self, symbol: str) -> str:
        """Yahoo Finance ticker for a crypto symbol, e.g. BTC -> BTC-USD."""
        return f"{symbol.upper()}-{self.quote_currency}"

    def get_quote(self, symbol: str) -> PriceQuote:
        """
        Fetch the current price and 24 hour change.

        Args:
            symbol: Asset symbol (e.g., "BTC")

        Returns:
            PriceQuote

        Raises:
            ValueError: If the symbol is unknown or has no recent data
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._fetch_quote(symbol)
            except ValueError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Price fetch for {symbol} failed (attempt {attempt}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay)
        raise ConnectionError(f"Price fetch for {symbol} failed: {last_error}")

    def _fetch_quote(self, symbol: str) -> PriceQuote:
        ticker = yf.Ticker(self.yahoo_ticker(symbol))
        hist = ticker.history(period="2d", interval="1h")

        if hist.empty:
            raise ValueError(f"Invalid symbol or no data available: {symbol}")

        closes = hist["Close"].dropna()
        if closes.empty:
            raise ValueError(f"Invalid symbol or no data available: {symbol}")

        current_price = float(closes.iloc[-1])
        latest = closes.index[-1]

        # Reference price: last close at least 24h before the latest one
        earlier = closes[closes.index <= latest - timedelta(hours=24)]
        reference = float(earlier.iloc[-1]) if len(earlier) else float(closes.iloc[0])

        if reference == 0:
            change_pct = 0.0
        else:
            change_pct = (current_price - reference) / reference * 100

        as_of = latest.to_pydatetime() if hasattr(latest, "to_pydatetime") else utcnow()

        return PriceQuote(
            symbol=symbol.upper(),
            current_price=current_price,
            percent_change_24h=change_pct,
            as_of=to_utc(as_of),
        )

    def poll(self, symbols: list[str]) -> list[dict[str, Any]]:
        """
        Fetch payloads for many assets, skipping the ones that fail.

        Args:
            symbols: Asset symbols

        Returns:
            Price payloads for the symbols that could be fetched
        """
        payloads = []
        for symbol in symbols:
            try:
                payloads.append(self.get_quote(symbol).to_payload())
            except (ValueError, ConnectionError) as e:
                logger.warning(f"Skipping price for {symbol}: {e}")
        return payloads


class JsonFeed:
    """Pulls a list of payloads from an HTTP JSON endpoint."""

    name = "json"

    def __init__(self, url: Optional[str], timeout: float = 10):
        """
        Initialize feed.

        Args:
            url: Endpoint URL; an empty URL disables the feed
            timeout: HTTP timeout in seconds
        """
        self.url = url
        self.timeout = timeout

    def poll(self, symbols: list[str]) -> list[dict[str, Any]]:
        """Fetch payloads for the given assets. Failures yield an empty list."""
        if not self.url or not symbols:
            return []

        try:
            response = requests.get(
                self.url,
                params={"symbols": ",".join(s.upper() for s in symbols)},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            logger.warning(f"{self.name} feed request failed: {e}")
            return []
        except ValueError as e:
            logger.warning(f"{self.name} feed returned invalid JSON: {e}")
            return []

        if isinstance(body, dict):
            body = body.get("data", [])
        if not isinstance(body, list):
            logger.warning(f"{self.name} feed returned unexpected body: {type(body).__name__}")
            return []
        return [item for item in body if isinstance(item, dict)]


class SentimentFeed(JsonFeed):
    """Rolling-window social sentiment: {symbol, sentimentScore, sampleCount, asOf}."""

    name = "sentiment"


class NewsFeed(JsonFeed):
    """Narrative and news events: {symbol, relevance, headline, asOf}."""

    name = "news"
