"""
CLI commands for CoinPulse.
"""

import argparse
import json
import sqlite3
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

from coinpulse.database.connection import Database
from coinpulse.database.models import (
    AlertFrequency,
    NotificationPriority,
    SignalKind,
    User,
)
from coinpulse.database.repository import (
    AlertRuleRepository,
    NotificationRepository,
    SignalRepository,
    UserRepository,
    WatchlistRepository,
)
from coinpulse.dispatch.sink import NotificationSink
from coinpulse.errors import CoinPulseError
from coinpulse.rules.service import AlertRuleService


def add_user(
    db: Database,
    email: Optional[str] = None,
    push_webhook: Optional[str] = None,
) -> User:
    """Add a new user."""
    repo = UserRepository(db)
    user = User(email=email, push_webhook_url=push_webhook)
    return repo.create(user)


def add_to_watchlist(
    db: Database,
    user_id: int,
    symbols: list[str],
) -> dict:
    """Add assets to user's watchlist."""
    watchlist_repo = WatchlistRepository(db)

    added = []
    existing = []

    for symbol in symbols:
        symbol = symbol.strip().upper()
        if not symbol:
            continue
        try:
            watchlist_repo.add(user_id, symbol)
            added.append(symbol)
        except sqlite3.IntegrityError:
            existing.append(symbol)

    return {"added": added, "existing": existing}


def rule_changes(args: argparse.Namespace) -> dict[str, Any]:
    """Collect the rule settings given on the command line."""
    options = {
        "sentiment_threshold": args.sentiment_threshold,
        "price_change_threshold": args.price_threshold,
        "frequency": args.frequency,
        "enable_sentiment": args.sentiment,
        "enable_price": args.price,
        "enable_narrative": args.narrative,
        "email_notifications": args.email,
        "push_notifications": args.push,
    }
    return {name: value for name, value in options.items() if value is not None}


def format_rule(rule) -> str:
    scope = rule.asset_symbol or "global"
    frequency = AlertFrequency(rule.frequency).value
    channels = [
        name
        for name, on in (("push", rule.push_notifications), ("email", rule.email_notifications))
        if on
    ]
    kinds = [
        kind.value for kind in SignalKind if rule.is_enabled(kind)
    ]
    return (
        f"[{scope}] sentiment>={rule.sentiment_threshold} "
        f"price>={rule.price_change_threshold}% frequency={frequency} "
        f"kinds={','.join(kinds) or '-'} channels={','.join(channels) or '-'}"
    )


def ingest(db: Database, payload: dict[str, Any], kind: str, config_path: Optional[str] = None):
    """Run one raw observation through the pipeline."""
    from coinpulse.main import CoinPulseApp
    from coinpulse.notifiers.push import PushNotifier

    if config_path:
        from coinpulse.config import load_config

        app = CoinPulseApp.from_config(load_config(config_path), db)
    else:
        app = CoinPulseApp(db, notifiers=[PushNotifier()])
    try:
        return app.process_raw(payload, kind)
    finally:
        app.close()


def _add_rule_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sentiment-threshold", type=int, help="Sentiment threshold (0-100)")
    parser.add_argument("--price-threshold", type=float, help="Price change threshold in %%")
    parser.add_argument(
        "--frequency", choices=[f.value for f in AlertFrequency], help="Alert frequency"
    )
    for name in ("sentiment", "price", "narrative", "email", "push"):
        parser.add_argument(
            f"--{name}", action=argparse.BooleanOptionalAction, default=None
        )


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="CoinPulse CLI")
    parser.add_argument("--db", default="data/coinpulse.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--email", help="User email")
    add_user_parser.add_argument("--push", help="Push webhook URL")

    user_subparsers.add_parser("list", help="List users")

    # Watchlist commands
    watchlist_parser = subparsers.add_parser("watchlist", help="Watchlist management")
    watchlist_subparsers = watchlist_parser.add_subparsers(dest="action")

    add_watchlist_parser = watchlist_subparsers.add_parser("add", help="Add to watchlist")
    add_watchlist_parser.add_argument("--user", type=int, required=True, help="User ID")
    add_watchlist_parser.add_argument(
        "--symbols", required=True, help="Comma-separated asset symbols"
    )

    show_watchlist_parser = watchlist_subparsers.add_parser("show", help="Show watchlist")
    show_watchlist_parser.add_argument("--user", type=int, required=True, help="User ID")

    # Rules commands
    rules_parser = subparsers.add_parser("rules", help="Alert rule management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    show_rules_parser = rules_subparsers.add_parser("show", help="Show rules")
    show_rules_parser.add_argument("--user", type=int, required=True, help="User ID")

    set_rule_parser = rules_subparsers.add_parser("set", help="Customize a rule")
    set_rule_parser.add_argument("--user", type=int, required=True, help="User ID")
    set_rule_parser.add_argument("--symbol", help="Asset symbol; omit for the global rule")
    _add_rule_options(set_rule_parser)

    reset_rule_parser = rules_subparsers.add_parser("reset", help="Reset global rule")
    reset_rule_parser.add_argument("--user", type=int, required=True, help="User ID")

    delete_rule_parser = rules_subparsers.add_parser("delete", help="Delete asset rule")
    delete_rule_parser.add_argument("--user", type=int, required=True, help="User ID")
    delete_rule_parser.add_argument("--symbol", required=True, help="Asset symbol")

    # Signal commands
    signals_parser = subparsers.add_parser("signals", help="Signal history")
    signals_subparsers = signals_parser.add_subparsers(dest="action")

    list_signals_parser = signals_subparsers.add_parser("list", help="List signals")
    list_signals_parser.add_argument("--user", type=int, help="Only the user's watchlist")
    list_signals_parser.add_argument("--symbols", help="Comma-separated asset symbols")
    list_signals_parser.add_argument("--limit", type=int, default=20)

    # Notification commands
    notif_parser = subparsers.add_parser("notifications", help="Notification inbox")
    notif_subparsers = notif_parser.add_subparsers(dest="action")

    list_notif_parser = notif_subparsers.add_parser("list", help="List notifications")
    list_notif_parser.add_argument("--user", type=int, required=True, help="User ID")
    list_notif_parser.add_argument("--page", type=int, default=1)
    list_notif_parser.add_argument("--limit", type=int, default=20)
    list_notif_parser.add_argument("--symbol", help="Asset symbol filter")
    list_notif_parser.add_argument(
        "--priority", choices=[p.value for p in NotificationPriority]
    )
    list_notif_parser.add_argument("--archived", action="store_true", help="Include archived")

    read_notif_parser = notif_subparsers.add_parser("read", help="Mark as read")
    read_notif_parser.add_argument("--id", type=int, required=True, help="Notification ID")

    read_all_parser = notif_subparsers.add_parser("read-all", help="Mark all as read")
    read_all_parser.add_argument("--user", type=int, required=True, help="User ID")

    archive_parser = notif_subparsers.add_parser("archive", help="Archive notification")
    archive_parser.add_argument("--id", type=int, required=True, help="Notification ID")

    # Ingest
    ingest_parser = subparsers.add_parser("ingest", help="Run one observation")
    ingest_parser.add_argument(
        "--kind", required=True, choices=[k.value for k in SignalKind]
    )
    ingest_parser.add_argument("--payload", required=True, help="Observation JSON")
    ingest_parser.add_argument("--config", help="Path to config file")

    args = parser.parse_args()

    # Initialize database
    db = Database(args.db)
    db.initialize()

    try:
        _run(db, args)
    except CoinPulseError as e:
        parser.exit(1, f"Error: {e}\n")
    finally:
        db.close()


def _run(db: Database, args: argparse.Namespace) -> None:
    # Handle commands
    if args.command == "user":
        if args.action == "add":
            user = add_user(db, email=args.email, push_webhook=args.push)
            print(f"Created user with ID: {user.id}")
        elif args.action == "list":
            repo = UserRepository(db)
            for user in repo.list_all():
                print(f"ID: {user.id}, Email: {user.email}, Push: {user.push_webhook_url}")

    elif args.command == "watchlist":
        if args.action == "add":
            symbols = args.symbols.split(",")
            result = add_to_watchlist(db, args.user, symbols)
            print(f"Added: {result['added']}")
            if result["existing"]:
                print(f"Already watching: {result['existing']}")
        elif args.action == "show":
            repo = WatchlistRepository(db)
            for symbol in repo.get_user_watchlist(args.user):
                print(symbol)

    elif args.command == "rules":
        service = AlertRuleService(AlertRuleRepository(db))
        if args.action == "show":
            print(format_rule(service.get_global_rule(args.user)))
            for rule in service.list_rules(args.user):
                if not rule.is_global:
                    print(format_rule(rule))
        elif args.action == "set":
            changes = rule_changes(args)
            if args.symbol:
                rule = service.update_asset_rule(args.user, args.symbol, **changes)
            else:
                rule = service.update_global_rule(args.user, **changes)
            print(format_rule(rule))
        elif args.action == "reset":
            print(format_rule(service.reset_global_rule(args.user)))
        elif args.action == "delete":
            if service.delete_asset_rule(args.user, args.symbol):
                print(f"Deleted {args.symbol.upper()} rule")
            else:
                print(f"No {args.symbol.upper()} rule for user {args.user}")

    elif args.command == "signals":
        if args.action == "list":
            if args.symbols:
                symbols = [s.strip().upper() for s in args.symbols.split(",") if s.strip()]
            elif args.user is not None:
                symbols = WatchlistRepository(db).get_user_watchlist(args.user)
            else:
                symbols = WatchlistRepository(db).list_symbols()
            for s in SignalRepository(db).list_for_assets(symbols, limit=args.limit):
                print(
                    f"{s.timestamp:%Y-%m-%d %H:%M} {s.asset_symbol} "
                    f"{SignalKind(s.type).value} {s.strength}: {s.description}"
                )

    elif args.command == "notifications":
        sink = NotificationSink(NotificationRepository(db), UserRepository(db))
        if args.action == "list":
            priority = NotificationPriority(args.priority) if args.priority else None
            notifications = sink.list_notifications(
                args.user,
                page=args.page,
                limit=args.limit,
                asset_symbol=args.symbol.upper() if args.symbol else None,
                priority=priority,
                include_archived=args.archived,
            )
            for n in notifications:
                print(f"#{n.id} [{n.state.value}] [{n.priority.value}] {n.title}: {n.message}")
            print(f"Unread: {sink.unread_count(args.user)}")
        elif args.action == "read":
            if sink.mark_read(args.id) is None:
                print(f"Notification {args.id} not found")
            else:
                print(f"Notification {args.id} marked read")
        elif args.action == "read-all":
            print(f"Marked {sink.mark_all_read(args.user)} notifications read")
        elif args.action == "archive":
            if sink.archive(args.id) is None:
                print(f"Notification {args.id} not found")
            else:
                print(f"Notification {args.id} archived")

    elif args.command == "ingest":
        result = ingest(db, json.loads(args.payload), args.kind, args.config)
        print(f"Signal {result.signal.id}: strength {result.signal.strength}")
        for outcome in result.outcomes:
            print(f"User {outcome.user_id}: {outcome.status} {outcome.reason or outcome.error or ''}")


if __name__ == "__main__":
    main()
