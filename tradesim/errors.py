"""
Error taxonomy for the trading engine.

Every rejection the engine can produce is one of these classes so callers
can tell a price problem (retry after refresh) from a funds problem (top up)
from a persistence problem (retry or escalate).
"""

from typing import List, Optional


class TradingError(Exception):
    """Base error for all trading engine errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        # Execution states reached before the error, ending in FAILED
        self.states: List = []
        super().__init__(self.message)


# =============================================================================
# Rejections before any state is touched
# =============================================================================


class TradeRejected(TradingError):
    """A trade refused before mutation. Carries the attempted fee breakdown."""

    def __init__(self, message: str, fees=None) -> None:
        super().__init__(message)
        self.fees = fees


class ValidationError(TradeRejected):
    """Malformed request: unknown asset type, bad quantity, bad side."""


class InvalidFeePolicy(ValidationError):
    """Fee settings update rejected at the boundary."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Invalid fee setting '{key}': {reason}")
        self.key = key
        self.reason = reason


class InsufficientBalance(TradeRejected):
    """Account balance does not cover the total cost of a buy."""

    def __init__(self, required, available, fees=None) -> None:
        super().__init__(
            f"Insufficient balance. You need {required:,.2f} "
            f"but only have {available:,.2f}",
            fees=fees,
        )
        self.required = required
        self.available = available
        self.shortfall = required - available


class InsufficientHoldings(TradeRejected):
    """Sell quantity exceeds the held quantity, or nothing is held."""

    def __init__(self, symbol: str, held, requested, unit: str = "units", fees=None) -> None:
        if not held:
            message = f"You don't own any {unit} of {symbol}"
        else:
            message = (
                f"Insufficient {unit}. You own {held} {symbol} "
                f"but are trying to sell {requested}"
            )
        super().__init__(message, fees=fees)
        self.symbol = symbol
        self.held = held
        self.requested = requested


class AccountNotFound(TradeRejected):
    """No account registered for the user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Account not found: {user_id}")
        self.user_id = user_id


# =============================================================================
# Price resolution
# =============================================================================


class PriceError(TradingError):
    """Upstream quote missing or unusable. Never mutates state."""

    def __init__(self, asset_type: str, symbol: str, reason: str) -> None:
        super().__init__(f"Price unavailable for {asset_type}:{symbol}: {reason}")
        self.asset_type = asset_type
        self.symbol = symbol
        self.reason = reason


class PriceUnavailable(PriceError):
    """No store observation and the live feed failed or timed out."""


class StaleData(PriceError):
    """A quote exists but is too old or has a non-positive price."""

    def __init__(
        self,
        asset_type: str,
        symbol: str,
        reason: str,
        age_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(asset_type, symbol, reason)
        self.age_seconds = age_seconds


# =============================================================================
# Persistence
# =============================================================================


class PersistenceError(TradingError):
    """Base for account/holding/trade store failures."""


class PersistenceConflict(PersistenceError):
    """Account row changed underneath a writer. Retryable."""

    def __init__(self, user_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Concurrent update on account {user_id}: "
            f"expected version {expected}, found {actual}"
        )
        self.user_id = user_id
        self.expected = expected
        self.actual = actual


class PersistenceFailure(PersistenceError):
    """A write failed part-way through a unit of work."""


class ReconciliationError(PersistenceError):
    """Compensation after a partial write failed. Accounts need manual repair."""


class TradeExecutionFailed(TradingError):
    """A trade failed during apply; state was restored before raising."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.cause = cause
