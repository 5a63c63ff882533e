"""
Configuration loading and validation.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/coinpulse.db"
    timeout_seconds: float = 5.0


@dataclass
class FeedsConfig:
    """Provider feed configuration."""

    tracked_symbols: list[str] = field(default_factory=lambda: ["BTC", "ETH"])
    quote_currency: str = "USD"
    sentiment_url: Optional[str] = None
    news_url: Optional[str] = None
    request_timeout_seconds: float = 10.0


@dataclass
class PipelineConfig:
    """Signal-to-alert pipeline settings."""

    resolution_timeout_seconds: float = 2.0
    grouping_window_minutes: int = 5
    max_workers: int = 4


@dataclass
class PushNotificationConfig:
    """Push gateway settings."""

    gateway_url: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass
class EmailNotificationConfig:
    """Email notification settings."""

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    push: PushNotificationConfig = field(default_factory=PushNotificationConfig)
    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    max_retries: int = 3
    retry_delay_seconds: int = 5


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    feeds: FeedsConfig = field(default_factory=FeedsConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _require_positive(section: dict[str, Any], key: str, label: str) -> None:
    value = section.get(key)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigValidationError(f"{label} must be a positive number")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")
    _require_positive(db_config, "timeout_seconds", "database.timeout_seconds")

    pipeline = config_dict.get("pipeline") or {}
    _require_positive(pipeline, "resolution_timeout_seconds", "pipeline.resolution_timeout_seconds")
    _require_positive(pipeline, "grouping_window_minutes", "pipeline.grouping_window_minutes")
    _require_positive(pipeline, "max_workers", "pipeline.max_workers")

    feeds = config_dict.get("feeds") or {}
    symbols = feeds.get("tracked_symbols")
    if symbols is not None and not isinstance(symbols, list):
        raise ConfigValidationError("feeds.tracked_symbols must be a list")

    advanced = config_dict.get("advanced") or {}
    log_level = str(advanced.get("log_level", "INFO")).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigValidationError(f"Unknown log level: {log_level}")


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    # Validate
    _validate_config(config_dict)

    try:
        database = DatabaseConfig(**config_dict.get("database", {}))

        feeds_dict = dict(config_dict.get("feeds") or {})
        feeds_dict["tracked_symbols"] = [
            str(s).strip().upper()
            for s in feeds_dict.get("tracked_symbols", FeedsConfig().tracked_symbols)
        ]
        # Empty env substitutions disable the feed
        for key in ("sentiment_url", "news_url"):
            feeds_dict[key] = feeds_dict.get(key) or None
        feeds = FeedsConfig(**feeds_dict)

        pipeline = PipelineConfig(**(config_dict.get("pipeline") or {}))

        # Notifications
        notif_dict = config_dict.get("notifications") or {}
        push_dict = dict(notif_dict.get("push") or {})
        push_dict["gateway_url"] = push_dict.get("gateway_url") or None
        notifications = NotificationsConfig(
            push=PushNotificationConfig(**push_dict),
            email=EmailNotificationConfig(**(notif_dict.get("email") or {})),
        )

        advanced_dict = dict(config_dict.get("advanced") or {})
        if "log_level" in advanced_dict:
            advanced_dict["log_level"] = str(advanced_dict["log_level"]).upper()
        advanced = AdvancedConfig(**advanced_dict)
    except TypeError as e:
        # Unknown keys in a section
        raise ConfigValidationError(f"Invalid configuration: {e}")

    return AppConfig(
        database=database,
        feeds=feeds,
        pipeline=pipeline,
        notifications=notifications,
        advanced=advanced,
    )
