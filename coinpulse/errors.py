"""
Error taxonomy for the signal-to-alert pipeline.
"""


class CoinPulseError(Exception):
    """Base class for pipeline errors."""

    pass


class MalformedInputError(CoinPulseError, ValueError):
    """Raised when a provider payload cannot be normalized."""

    pass


class ResolutionTimeoutError(CoinPulseError):
    """Raised when an alert rule lookup exceeds its time budget."""

    pass


class ThrottleConflictError(CoinPulseError):
    """Raised when a dispatch window write loses against a concurrent writer."""

    pass


class DeliveryChannelError(CoinPulseError):
    """Raised when a push or email delivery attempt fails."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class PersistenceError(CoinPulseError):
    """Raised when a signal, notification or dispatch window write fails."""

    pass


class RuleValidationError(CoinPulseError, ValueError):
    """Raised when alert rule settings are out of range."""

    pass
