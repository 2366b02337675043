"""
Platform fee and tax calculation.

Fees are a clamped platform percentage plus an unclamped tax percentage of
the trade notional. The calculation is pure: the fee policy is passed in as
a snapshot so a trade's fees never change if settings are edited mid-flight.
"""

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from ..config import FEE_POLICY_BOUNDS, FEE_POLICY_DEFAULTS, TRADE_SIDES
from ..errors import InvalidFeePolicy, ValidationError

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
ZERO = Decimal("0")


def to_decimal(value) -> Decimal:
    """Convert a price, quantity or amount to Decimal without float noise."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Not a number: {value!r}")


@dataclass(frozen=True)
class FeePolicy:
    """Fee settings snapshot. Immutable for the life of one trade."""

    platform_fee_pct: Decimal
    tax_pct: Decimal
    min_fee: Decimal
    max_fee: Decimal

    @classmethod
    def default(cls) -> "FeePolicy":
        """Policy built from the configured defaults."""
        return cls.from_dict(FEE_POLICY_DEFAULTS)

    @classmethod
    def from_dict(cls, data: Dict) -> "FeePolicy":
        """
        Build a validated policy.

        Unknown keys, missing keys, non-numeric values and values outside
        FEE_POLICY_BOUNDS are rejected.

        Raises:
            InvalidFeePolicy: On any invalid field
        """
        unknown = set(data) - set(FEE_POLICY_BOUNDS)
        if unknown:
            key = sorted(unknown)[0]
            raise InvalidFeePolicy(key, "unknown setting")

        values = {}
        for key, (lower, upper) in FEE_POLICY_BOUNDS.items():
            if key not in data:
                raise InvalidFeePolicy(key, "missing")
            raw = data[key]
            if isinstance(raw, bool):
                raise InvalidFeePolicy(key, f"not a number: {raw!r}")
            try:
                value = to_decimal(raw)
            except ValidationError:
                raise InvalidFeePolicy(key, f"not a number: {raw!r}")
            if not value.is_finite():
                raise InvalidFeePolicy(key, "must be finite")
            if lower is not None and value < to_decimal(lower):
                raise InvalidFeePolicy(key, f"must be >= {lower}")
            if upper is not None and value > to_decimal(upper):
                raise InvalidFeePolicy(key, f"must be <= {upper}")
            values[key] = value

        if values["min_fee"] > values["max_fee"]:
            raise InvalidFeePolicy("min_fee", "must not exceed max_fee")

        return cls(**values)

    def to_dict(self) -> Dict[str, float]:
        """Convert to a plain dict of floats (YAML/JSON friendly)."""
        return {k: float(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class FeeBreakdown:
    """Detailed breakdown of the fees on one trade."""

    side: str
    trade_amount: Decimal
    platform_fee: Decimal
    tax_amount: Decimal
    total_fees: Decimal
    net_amount: Decimal  # sell: credited proceeds; buy: same as total_cost
    total_cost: Decimal  # buy: debited amount; sell: same as trade_amount
    platform_fee_pct: Decimal
    tax_pct: Decimal

    @property
    def balance_delta(self) -> Decimal:
        """Signed change applied to the account balance."""
        if self.side == "buy":
            return -self.total_cost
        return self.net_amount

    def to_dict(self) -> Dict[str, float]:
        """Convert to dictionary."""
        return {
            "trade_amount": float(self.trade_amount),
            "platform_fee": float(self.platform_fee),
            "tax_amount": float(self.tax_amount),
            "total_fees": float(self.total_fees),
            "net_amount": float(self.net_amount),
            "total_cost": float(self.total_cost),
            "platform_fee_pct": float(self.platform_fee_pct),
            "tax_pct": float(self.tax_pct),
        }

    def to_record(self) -> Dict[str, str]:
        """Lossless form for the trade ledger (Decimals as strings)."""
        return {k: str(v) for k, v in asdict(self).items()}

    @classmethod
    def from_record(cls, record: Dict) -> "FeeBreakdown":
        values = {k: to_decimal(v) for k, v in record.items() if k != "side"}
        return cls(side=record["side"], **values)


def compute_fees(notional, side: str, policy: FeePolicy) -> FeeBreakdown:
    """
    Compute the fee breakdown for a trade.

    Args:
        notional: Price x quantity before fees
        side: 'buy' or 'sell'
        policy: Fee policy snapshot

    Returns:
        FeeBreakdown

    Raises:
        ValidationError: Unknown side, negative notional, or a sell whose
            fees would exceed its proceeds
    """
    if side not in TRADE_SIDES:
        raise ValidationError(f"Side must be one of {TRADE_SIDES}, got {side!r}")

    trade_amount = to_decimal(notional)
    if trade_amount < ZERO:
        raise ValidationError(f"Trade amount must not be negative: {trade_amount}")

    platform_fee = max(
        min(trade_amount * policy.platform_fee_pct / HUNDRED, policy.max_fee),
        policy.min_fee,
    )
    tax_amount = trade_amount * policy.tax_pct / HUNDRED
    total_fees = platform_fee + tax_amount

    if side == "buy":
        total_cost = trade_amount + total_fees
        net_amount = total_cost
    else:
        net_amount = trade_amount - total_fees
        total_cost = trade_amount

    breakdown = FeeBreakdown(
        side=side,
        trade_amount=trade_amount,
        platform_fee=platform_fee,
        tax_amount=tax_amount,
        total_fees=total_fees,
        net_amount=net_amount,
        total_cost=total_cost,
        platform_fee_pct=policy.platform_fee_pct,
        tax_pct=policy.tax_pct,
    )

    if side == "sell" and trade_amount > ZERO and net_amount < ZERO:
        raise ValidationError(
            f"Sell too small: fees of {total_fees} exceed proceeds of {trade_amount}",
            fees=breakdown,
        )

    return breakdown


class FeeCalculator:
    """
    Calculates trade fees under a fixed policy snapshot.

    Construct one per trade (or per preview) from the policy provider so
    every number in that trade is computed under the same settings.

    Example:
        calc = FeeCalculator(provider.get_policy())
        fees = calc.calculate_fee_breakdown(1000, "buy")
        print(f"Total cost: {fees.total_cost}")
    """

    def __init__(self, policy: Optional[FeePolicy] = None):
        """
        Initialize the fee calculator.

        Args:
            policy: Fee policy snapshot (default from config)
        """
        self.policy = policy or FeePolicy.default()

    def calculate_fee_breakdown(self, notional, side: str) -> FeeBreakdown:
        """Get the detailed fee breakdown for a trade."""
        return compute_fees(notional, side, self.policy)


def format_fee_info(fees: FeeBreakdown, currency: str = "KES") -> Dict:
    """
    Format a fee breakdown for display.

    Args:
        fees: Fee breakdown
        currency: Currency code used in the message

    Returns:
        Dict with amounts and a human-readable message
    """
    info = {
        "trade_amount": float(fees.trade_amount),
        "platform_fee": float(fees.platform_fee),
        "tax_amount": float(fees.tax_amount),
        "total_fees": float(fees.total_fees),
        "platform_gains": float(fees.total_fees),
    }

    if fees.side == "buy":
        info["total_cost"] = float(fees.total_cost)
        info["user_pays"] = float(fees.total_cost)
        info["message"] = (
            f"Total cost: {currency} {fees.total_cost:,.2f} "
            f"(including {currency} {fees.total_fees:,.2f} in fees)"
        )
    else:
        info["net_amount"] = float(fees.net_amount)
        info["user_receives"] = float(fees.net_amount)
        info["message"] = (
            f"You'll receive: {currency} {fees.net_amount:,.2f} "
            f"(after {currency} {fees.total_fees:,.2f} in fees)"
        )

    return info


def validate_buy_order(balance, fees: FeeBreakdown) -> Dict:
    """
    Check whether a balance covers a buy, fees included.

    Returns:
        Dict with has_sufficient_balance, required_amount,
        available_balance and shortfall
    """
    balance = to_decimal(balance)
    sufficient = balance >= fees.total_cost

    return {
        "has_sufficient_balance": sufficient,
        "required_amount": fees.total_cost,
        "available_balance": balance,
        "shortfall": ZERO if sufficient else fees.total_cost - balance,
    }


def platform_revenue(fees: FeeBreakdown) -> Decimal:
    """Platform revenue from a trade."""
    return fees.total_fees
