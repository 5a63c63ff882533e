"""
Main application entry point.
"""

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from dotenv import load_dotenv

load_dotenv()

from coinpulse.config import AppConfig
from coinpulse.data.feeds import JsonFeed, NewsFeed, PriceFeed, SentimentFeed
from coinpulse.database.connection import Database
from coinpulse.database.models import Observation, Signal, SignalKind, to_utc, utcnow
from coinpulse.database.repository import (
    AlertRuleRepository,
    DispatchWindowRepository,
    NotificationRepository,
    SignalRepository,
    UserRepository,
    WatchlistRepository,
)
from coinpulse.dispatch.sink import NotificationSink
from coinpulse.dispatch.throttler import DispatchThrottler
from coinpulse.errors import MalformedInputError, PersistenceError
from coinpulse.notifiers.base import Notifier, NotifierFactory
from coinpulse.rules.evaluator import ThresholdEvaluator
from coinpulse.rules.resolver import AlertRuleResolver
from coinpulse.signals.normalizer import normalize, normalize_batch
from coinpulse.signals.scorer import SignalScorer

logger = logging.getLogger(__name__)

STATUS_NOTIFIED = "notified"
STATUS_SKIPPED = "skipped"
STATUS_SUPPRESSED = "suppressed"
STATUS_FAILED = "failed"

ITEM_PROCESSED = "processed"
ITEM_DROPPED = "dropped"
ITEM_FAILED = "failed"


@dataclass
class Outcome:
    """What happened for one user watching the signal's asset."""

    user_id: int
    status: str
    reason: Optional[str] = None
    notification_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class PipelineResult:
    """Result of running one observation through the pipeline."""

    signal: Signal
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def notified(self) -> list[Outcome]:
        return [o for o in self.outcomes if o.status == STATUS_NOTIFIED]

    @property
    def failed(self) -> list[Outcome]:
        return [o for o in self.outcomes if o.status == STATUS_FAILED]


@dataclass
class BatchItemResult:
    """Per-item result of a batch run."""

    index: int
    status: str
    asset_symbol: Optional[str] = None
    result: Optional[PipelineResult] = None
    error: Optional[str] = None


class CoinPulseApp:
    """Signal-to-alert pipeline."""

    def __init__(
        self,
        db: Database,
        notifiers: Optional[list[Notifier]] = None,
        resolution_timeout_seconds: Optional[float] = 2.0,
        grouping_window_minutes: int = 5,
        max_workers: int = 4,
        price_feed: Optional[PriceFeed] = None,
        sentiment_feed: Optional[JsonFeed] = None,
        news_feed: Optional[JsonFeed] = None,
        tracked_symbols: Optional[list[str]] = None,
    ):
        """
        Initialize CoinPulse app.

        Args:
            db: Database instance
            notifiers: Delivery channels (push, email)
            resolution_timeout_seconds: Budget for one alert rule lookup
            grouping_window_minutes: Window for grouping notifications per asset
            max_workers: Threads used by batch runs
            price_feed: Price provider
            sentiment_feed: Sentiment provider
            news_feed: News provider
            tracked_symbols: Assets polled in addition to watched ones
        """
        self.db = db
        self.max_workers = max_workers
        self.tracked_symbols = [s.upper() for s in (tracked_symbols or [])]

        # Initialize repositories
        self.user_repo = UserRepository(db)
        self.watchlist_repo = WatchlistRepository(db)
        self.rule_repo = AlertRuleRepository(db)
        self.signal_repo = SignalRepository(db)
        self.notification_repo = NotificationRepository(db)
        self.window_repo = DispatchWindowRepository(db)

        # Initialize pipeline stages
        self.scorer = SignalScorer()
        self.resolver = AlertRuleResolver(
            self.rule_repo,
            timeout_seconds=resolution_timeout_seconds,
            max_workers=max_workers,
        )
        self.evaluator = ThresholdEvaluator()
        self.throttler = DispatchThrottler(self.window_repo)
        self.sink = NotificationSink(
            self.notification_repo,
            self.user_repo,
            notifiers=notifiers,
            grouping_window=timedelta(minutes=grouping_window_minutes),
        )

        # Initialize feeds
        self.price_feed = price_feed
        self.sentiment_feed = sentiment_feed
        self.news_feed = news_feed

    @classmethod
    def from_config(cls, config: AppConfig, db: Database) -> "CoinPulseApp":
        """Build the app and its channels and feeds from configuration."""
        notifiers = [
            NotifierFactory.create({
                "type": "push",
                "gateway_url": config.notifications.push.gateway_url,
                "timeout_seconds": config.notifications.push.timeout_seconds,
            })
        ]
        email = config.notifications.email
        if email.smtp_host and email.from_address:
            notifiers.append(NotifierFactory.create({"type": "email", **vars(email)}))

        feeds = config.feeds
        return cls(
            db=db,
            notifiers=notifiers,
            resolution_timeout_seconds=config.pipeline.resolution_timeout_seconds,
            grouping_window_minutes=config.pipeline.grouping_window_minutes,
            max_workers=config.pipeline.max_workers,
            price_feed=PriceFeed(
                quote_currency=feeds.quote_currency,
                max_retries=config.advanced.max_retries,
                retry_delay=config.advanced.retry_delay_seconds,
            ),
            sentiment_feed=SentimentFeed(feeds.sentiment_url, feeds.request_timeout_seconds),
            news_feed=NewsFeed(feeds.news_url, feeds.request_timeout_seconds),
            tracked_symbols=feeds.tracked_symbols,
        )

    def process_observation(
        self, observation: Observation, now: Optional[datetime] = None
    ) -> PipelineResult:
        """
        Score an observation, store the signal and alert every watching user.

        Args:
            observation: Normalized observation
            now: Processing time, defaults to the current time

        Returns:
            PipelineResult with one outcome per watching user

        Raises:
            PersistenceError: If the signal could not be stored
        """
        now = to_utc(now) if now else utcnow()
        signal = self.scorer.score(observation)
        try:
            signal = self.signal_repo.create(signal)
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Could not store {signal.type.value} signal for {signal.asset_symbol}: {e}"
            ) from e

        logger.info(
            f"Signal {signal.id}: {signal.asset_symbol} {signal.type.value} "
            f"strength {signal.strength}"
        )

        result = PipelineResult(signal=signal)
        for user_id in self.watchlist_repo.get_watchers(signal.asset_symbol):
            result.outcomes.append(self._process_user(user_id, signal, now))
        return result

    def process_raw(
        self,
        payload: dict[str, Any],
        kind: Union[SignalKind, str],
        now: Optional[datetime] = None,
    ) -> PipelineResult:
        """Normalize a provider payload and run it through the pipeline."""
        return self.process_observation(normalize(payload, kind), now=now)

    def _process_user(self, user_id: int, signal: Signal, now: datetime) -> Outcome:
        """Resolve, evaluate, throttle and dispatch for one user."""
        try:
            rule = self.resolver.resolve(user_id, signal.asset_symbol)
            decision = self.evaluator.evaluate(signal, rule)
            if not decision.fire:
                return Outcome(user_id=user_id, status=STATUS_SKIPPED, reason=decision.reason)

            if not self.throttler.admit(
                user_id, signal.asset_symbol, signal.type, rule.frequency, now
            ):
                return Outcome(user_id=user_id, status=STATUS_SUPPRESSED, reason="cooling")

            try:
                notification = self.sink.dispatch(user_id, signal, rule, now)
            except PersistenceError:
                self.throttler.release(user_id, signal.asset_symbol, signal.type, now)
                raise
            return Outcome(
                user_id=user_id,
                status=STATUS_NOTIFIED,
                reason=decision.reason,
                notification_id=notification.id,
            )

        except PersistenceError as e:
            logger.error(f"Signal {signal.id} not delivered to user {user_id}: {e}")
            return Outcome(user_id=user_id, status=STATUS_FAILED, error=str(e))
        except Exception as e:
            logger.error(f"Error processing signal {signal.id} for user {user_id}: {e}")
            return Outcome(user_id=user_id, status=STATUS_FAILED, error=str(e))

    def run_batch(
        self,
        payloads: list[dict[str, Any]],
        kind: Union[SignalKind, str],
        now: Optional[datetime] = None,
    ) -> list[BatchItemResult]:
        """
        Process provider payloads independently of each other.

        Returns:
            One result per payload, in input order
        """
        if not payloads:
            return []
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="pipeline"
        ) as executor:
            futures = [
                executor.submit(self._process_item, index, payload, kind, now)
                for index, payload in enumerate(payloads)
            ]
            return [future.result() for future in futures]

    def _process_item(
        self,
        index: int,
        payload: dict[str, Any],
        kind: Union[SignalKind, str],
        now: Optional[datetime],
    ) -> BatchItemResult:
        try:
            observation = normalize(payload, kind)
        except MalformedInputError as e:
            logger.warning(f"Dropping malformed payload #{index}: {e}")
            return BatchItemResult(index=index, status=ITEM_DROPPED, error=str(e))

        try:
            result = self.process_observation(observation, now=now)
        except Exception as e:
            logger.error(f"Error processing {observation.asset_symbol} payload #{index}: {e}")
            return BatchItemResult(
                index=index,
                status=ITEM_FAILED,
                asset_symbol=observation.asset_symbol,
                error=str(e),
            )
        return BatchItemResult(
            index=index,
            status=ITEM_PROCESSED,
            asset_symbol=observation.asset_symbol,
            result=result,
        )

    def symbols_to_poll(self) -> list[str]:
        """Configured assets plus every asset on a watchlist."""
        return sorted(set(self.tracked_symbols) | set(self.watchlist_repo.list_symbols()))

    def poll_feeds(self) -> dict[SignalKind, list[dict[str, Any]]]:
        """Pull raw payloads from every configured feed."""
        symbols = self.symbols_to_poll()
        feeds = {
            SignalKind.PRICE: self.price_feed,
            SignalKind.SENTIMENT: self.sentiment_feed,
            SignalKind.NARRATIVE: self.news_feed,
        }
        payloads = {}
        for kind, feed in feeds.items():
            if feed is None:
                continue
            try:
                payloads[kind] = feed.poll(symbols)
            except Exception as e:
                logger.error(f"Error polling {kind.value} feed: {e}")
                payloads[kind] = []
        return payloads

    def run_check(self) -> dict[SignalKind, list[BatchItemResult]]:
        """Poll all feeds once and run every payload through the pipeline."""
        results = {}
        for kind, payloads in self.poll_feeds().items():
            results[kind] = self.run_batch(payloads, kind)
            processed = sum(1 for r in results[kind] if r.status == ITEM_PROCESSED)
            logger.info(f"{kind.value}: processed {processed}/{len(payloads)} payloads")
        return results

    def close(self) -> None:
        """Release worker threads."""
        self.resolver.close()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="CoinPulse Signal Alert Service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--dry-run", action="store_true", help="Poll feeds without processing signals"
    )

    args = parser.parse_args()

    # Load config
    from coinpulse.config import load_config

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else config.advanced.log_level
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path, timeout=config.database.timeout_seconds)
    db.initialize()

    app = CoinPulseApp.from_config(config, db)
    try:
        if args.dry_run:
            logger.info("Dry run mode - signals will not be processed")
            for kind, payloads in app.poll_feeds().items():
                observations, errors = normalize_batch(payloads, kind)
                logger.info(
                    f"{kind.value}: {len(observations)} observations, {len(errors)} dropped"
                )
                for obs in observations:
                    logger.info(f"  {obs.asset_symbol}: {obs.magnitude:.2f}")
        else:
            app.run_check()
    finally:
        app.close()
        db.close()


if __name__ == "__main__":
    main()
