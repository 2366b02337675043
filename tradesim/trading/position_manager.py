"""
Position management.

Weighted-average holdings per (user, asset type, symbol). Holdings are
immutable values here: apply_buy and apply_sell return the next state and
never touch storage.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Tuple

from ..config import UNIT_NAMES
from ..errors import InsufficientHoldings, ValidationError
from .fee_calculator import HUNDRED, ZERO, to_decimal

logger = logging.getLogger(__name__)

HoldingKey = Tuple[str, str, str]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Holding:
    """A single open position."""

    user_id: str
    asset_type: str
    symbol: str
    quantity: Decimal
    avg_buy_price: Decimal  # asset price only
    avg_cost_basis: Decimal  # price plus amortized buy fees
    updated_at: str = ""

    @property
    def key(self) -> HoldingKey:
        return (self.user_id, self.asset_type, self.symbol)

    @property
    def total_cost(self) -> Decimal:
        """Amount paid for the open quantity, fees included."""
        return self.avg_cost_basis * self.quantity

    def market_value(self, price) -> Decimal:
        return self.quantity * to_decimal(price)

    def unrealized_pnl(self, price) -> Decimal:
        return self.market_value(price) - self.total_cost

    def to_dict(self) -> Dict:
        """Convert to a JSON-friendly dictionary."""
        return {
            "user_id": self.user_id,
            "asset_type": self.asset_type,
            "symbol": self.symbol,
            "quantity": str(self.quantity),
            "avg_buy_price": str(self.avg_buy_price),
            "avg_cost_basis": str(self.avg_cost_basis),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Holding":
        return cls(
            user_id=data["user_id"],
            asset_type=data["asset_type"],
            symbol=data["symbol"],
            quantity=to_decimal(data["quantity"]),
            avg_buy_price=to_decimal(data["avg_buy_price"]),
            avg_cost_basis=to_decimal(data["avg_cost_basis"]),
            updated_at=data.get("updated_at", ""),
        )


def apply_buy(
    holding: Optional[Holding],
    quantity,
    price,
    total_cost,
    key: Optional[HoldingKey] = None,
    timestamp: Optional[str] = None,
) -> Holding:
    """
    Next holding state after a buy.

    Args:
        holding: Existing holding, or None for a first buy
        quantity: Units bought
        price: Asset price per unit
        total_cost: Notional plus fees debited for this buy
        key: (user_id, asset_type, symbol), required when holding is None
        timestamp: ISO timestamp for updated_at

    Returns:
        New Holding with weighted-average prices
    """
    quantity = to_decimal(quantity)
    price = to_decimal(price)
    total_cost = to_decimal(total_cost)
    timestamp = timestamp or _now_iso()

    if quantity <= ZERO:
        raise ValidationError(f"Quantity must be positive, got {quantity}")

    if holding is None:
        if key is None:
            raise ValueError("key is required to open a new holding")
        user_id, asset_type, symbol = key
        return Holding(
            user_id=user_id,
            asset_type=asset_type,
            symbol=symbol,
            quantity=quantity,
            avg_buy_price=price,
            avg_cost_basis=total_cost / quantity,
            updated_at=timestamp,
        )

    old_qty = holding.quantity
    new_qty = old_qty + quantity
    return replace(
        holding,
        quantity=new_qty,
        avg_buy_price=(holding.avg_buy_price * old_qty + price * quantity) / new_qty,
        avg_cost_basis=(holding.avg_cost_basis * old_qty + total_cost) / new_qty,
        updated_at=timestamp,
    )


def apply_sell(
    holding: Optional[Holding],
    quantity,
    symbol: str = "",
    asset_type: str = "",
    timestamp: Optional[str] = None,
) -> Optional[Holding]:
    """
    Next holding state after a sell.

    Averages are kept on a partial sell; the holding is closed (None) when
    the quantity reaches zero.

    Raises:
        InsufficientHoldings: Nothing held, or quantity exceeds the holding
    """
    quantity = to_decimal(quantity)
    if quantity <= ZERO:
        raise ValidationError(f"Quantity must be positive, got {quantity}")

    if holding is not None:
        symbol, asset_type = holding.symbol, holding.asset_type
    unit = UNIT_NAMES.get(asset_type, "units")

    if holding is None:
        raise InsufficientHoldings(symbol, ZERO, quantity, unit=unit)
    if holding.quantity < quantity:
        raise InsufficientHoldings(symbol, holding.quantity, quantity, unit=unit)

    remaining = holding.quantity - quantity
    if remaining == ZERO:
        return None

    return replace(holding, quantity=remaining, updated_at=timestamp or _now_iso())


def realized_pnl(net_amount, avg_cost_basis, quantity) -> Decimal:
    """Realized profit or loss on a sell: proceeds less the cost basis sold."""
    return to_decimal(net_amount) - to_decimal(avg_cost_basis) * to_decimal(quantity)


def sell_performance(holding: Holding, quantity, fees) -> Dict[str, Decimal]:
    """
    Performance figures for selling part or all of a holding.

    Args:
        holding: Holding before the sell
        quantity: Units sold
        fees: Sell FeeBreakdown

    Returns:
        Dict with cost_basis, gross_proceeds, net_proceeds, profit_loss and
        profit_loss_pct
    """
    quantity = to_decimal(quantity)
    cost_basis = holding.avg_cost_basis * quantity
    pnl = realized_pnl(fees.net_amount, holding.avg_cost_basis, quantity)

    return {
        "cost_basis": cost_basis,
        "gross_proceeds": fees.trade_amount,
        "net_proceeds": fees.net_amount,
        "profit_loss": pnl,
        "profit_loss_pct": pnl / cost_basis * HUNDRED if cost_basis > ZERO else ZERO,
    }


def portfolio_summary(
    balance,
    holdings: Iterable[Holding],
    prices: Optional[Mapping[HoldingKey, Decimal]] = None,
) -> Dict:
    """
    Summary statistics for one account.

    Args:
        balance: Cash balance
        holdings: Open holdings
        prices: Optional current price per holding key; holdings without a
            price are valued at cost

    Returns:
        Dict with portfolio metrics
    """
    balance = to_decimal(balance)
    holdings = list(holdings)
    prices = prices or {}

    total_cost = ZERO
    market_value = ZERO
    priced = 0
    positions = []

    for h in holdings:
        price = prices.get(h.key)
        row = h.to_dict()
        row["total_cost"] = str(h.total_cost)
        total_cost += h.total_cost

        if price is not None:
            value = h.market_value(price)
            row["current_price"] = str(to_decimal(price))
            row["market_value"] = str(value)
            row["unrealized_pnl"] = str(h.unrealized_pnl(price))
            priced += 1
        else:
            value = h.total_cost
        market_value += value
        positions.append(row)

    pnl = market_value - total_cost
    return {
        "balance": balance,
        "n_positions": len(holdings),
        "n_priced": priced,
        "invested": total_cost,
        "market_value": market_value,
        "total_value": balance + market_value,
        "unrealized_pnl": pnl,
        "unrealized_pnl_pct": pnl / total_cost * HUNDRED if total_cost > ZERO else ZERO,
        "positions": positions,
    }
