"""
Trade execution engine.

Runs each buy or sell through a fixed sequence of states:

1. Validated       - asset type, quantity, account and (for sells) holding
2. Quoted          - fresh price from the resolver
3. FeeComputed     - fees under one policy snapshot
4. BalanceChecked  - buys only: balance covers the total cost
5. Applied         - balance, holding and trade written as one unit
6. Committed       - result returned

Anything raised before Applied leaves no trace. Price resolution happens
outside the user's lock; everything from the balance read to the commit
happens inside it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..config import (
    ASSET_TYPES,
    DEFAULT_TRADE_HISTORY_LIMIT,
    EXECUTION_CONFLICT_RETRIES,
    REPORTING_CURRENCY,
    UNIT_NAMES,
)
from ..errors import (
    InsufficientBalance,
    InsufficientHoldings,
    PersistenceConflict,
    PersistenceFailure,
    PriceError,
    TradeExecutionFailed,
    TradingError,
    ValidationError,
)
from .account_store import Account, AccountStore, Trade
from .fee_calculator import (
    FeeBreakdown,
    FeeCalculator,
    ZERO,
    format_fee_info,
    platform_revenue,
    to_decimal,
    validate_buy_order,
)
from .fee_policy import FeePolicyProvider
from .position_manager import (
    Holding,
    apply_buy,
    apply_sell,
    portfolio_summary,
    sell_performance,
)
from .price_resolver import PriceResolver, Quote

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TradeState(Enum):
    """Execution states of a single trade."""
    VALIDATED = "validated"
    QUOTED = "quoted"
    FEE_COMPUTED = "fee_computed"
    BALANCE_CHECKED = "balance_checked"
    APPLIED = "applied"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class BuyResult:
    """Outcome of a committed buy."""
    trade: Trade
    fees: FeeBreakdown
    new_balance: Decimal
    holding: Holding
    quote: Quote
    states: List[TradeState] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "trade": self.trade.to_dict(),
            "fees": format_fee_info(self.fees, REPORTING_CURRENCY),
            "new_balance": float(self.new_balance),
            "holding": self.holding.to_dict(),
            "price_source": self.quote.source,
        }


@dataclass
class SellResult:
    """Outcome of a committed sell, with realized performance."""
    trade: Trade
    fees: FeeBreakdown
    new_balance: Decimal
    remaining_quantity: Decimal
    profit_loss: Decimal
    profit_loss_pct: Decimal
    cost_basis: Decimal
    gross_proceeds: Decimal
    net_proceeds: Decimal
    quote: Quote
    states: List[TradeState] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "trade": self.trade.to_dict(),
            "fees": format_fee_info(self.fees, REPORTING_CURRENCY),
            "new_balance": float(self.new_balance),
            "remaining_quantity": float(self.remaining_quantity),
            "profit_loss": float(self.profit_loss),
            "performance": {
                "cost_basis": float(self.cost_basis),
                "gross_proceeds": float(self.gross_proceeds),
                "net_proceeds": float(self.net_proceeds),
                "profit_loss": float(self.profit_loss),
                "profit_loss_pct": float(self.profit_loss_pct),
            },
            "price_source": self.quote.source,
        }


class TradeExecutor:
    """
    Executes paper trades against virtual cash balances.

    Same-user trades are linearized by the account store's per-user lock;
    the account version is checked again at apply time and a conflicting
    write is retried with a fresh read.

    Example:
        executor = TradeExecutor(store, resolver, FeePolicyProvider())
        executor.open_account("alice", 100000)
        result = executor.buy("alice", "crypto", "BTC", "0.01")
        print(result.new_balance)
    """

    def __init__(
        self,
        account_store: AccountStore,
        price_resolver: PriceResolver,
        fee_policy: Optional[FeePolicyProvider] = None,
        clock: Callable[[], datetime] = _utcnow,
        max_retries: int = EXECUTION_CONFLICT_RETRIES,
    ):
        """
        Initialize the executor.

        Args:
            account_store: Account/holding/trade store
            price_resolver: Source of tradeable quotes
            fee_policy: Fee policy provider (in-memory defaults if omitted)
            clock: Wall clock for trade timestamps
            max_retries: Attempts on PersistenceConflict before giving up
        """
        self.store = account_store
        self.resolver = price_resolver
        self.fee_policy = fee_policy or FeePolicyProvider()
        self._clock = clock
        self.max_retries = max_retries

    # =========================================================================
    # Read-only operations
    # =========================================================================

    def open_account(self, user_id: str, starting_balance=None) -> Account:
        if starting_balance is None:
            return self.store.open_account(user_id)
        return self.store.open_account(user_id, starting_balance)

    def get_asset_price(self, asset_type: str, symbol: str) -> Dict:
        """Current price for an asset: price, change, change %, volume, timestamp."""
        return self.resolver.get_asset_price(asset_type, symbol)

    def validate_asset_price(self, asset_type: str, symbol: str) -> Dict:
        return self.resolver.validate_asset_price(asset_type, symbol)

    def get_trade_fees(self, asset_type: str, symbol: str, quantity, side: str) -> Dict:
        """
        Preview the fees for a trade at the current price. No mutation.

        Returns:
            Dict with trade_amount, fees, and total_cost (buy) or
            net_amount (sell)
        """
        symbol, quantity = self._validate(asset_type, symbol, quantity, side)
        quote = self.resolver.resolve(asset_type, symbol)
        fees = FeeCalculator(self.fee_policy.get_policy()).calculate_fee_breakdown(
            quote.price * quantity, side
        )

        preview = {
            "asset_type": asset_type,
            "symbol": symbol,
            "side": side,
            "quantity": float(quantity),
            "price": float(quote.price),
            "trade_amount": float(fees.trade_amount),
            "fees": {
                "platform_fee": float(fees.platform_fee),
                "tax_amount": float(fees.tax_amount),
                "total_fees": float(fees.total_fees),
            },
            "message": format_fee_info(fees, REPORTING_CURRENCY)["message"],
        }
        if side == "buy":
            preview["total_cost"] = float(fees.total_cost)
        else:
            preview["net_amount"] = float(fees.net_amount)
        return preview

    def get_portfolio(self, user_id: str, with_prices: bool = False) -> Dict:
        """
        Balance and holdings for a user.

        Args:
            user_id: Account owner
            with_prices: Resolve a current price for each holding; holdings
                whose price cannot be resolved are valued at cost
        """
        account = self.store.get_account(user_id)
        holdings = self.store.get_holdings(user_id)

        prices = {}
        if with_prices:
            for h in holdings:
                try:
                    prices[h.key] = self.resolver.resolve(h.asset_type, h.symbol).price
                except PriceError as e:
                    logger.warning(f"Valuing {h.symbol} at cost: {e.message}")

        summary = portfolio_summary(account.balance, holdings, prices)
        summary["user_id"] = user_id
        return summary

    def get_user_trades(self, user_id: str, limit: int = DEFAULT_TRADE_HISTORY_LIMIT) -> List[Dict]:
        """Most recent trades for a user, newest first."""
        self.store.get_account(user_id)
        return [t.to_dict() for t in self.store.get_trades(user_id, limit=limit, newest_first=True)]

    def get_trade_history(self, user_id: str, asset_type: str, symbol: str) -> List[Dict]:
        """Chronological trades on one asset."""
        symbol = self.resolver.normalize(asset_type, symbol)
        return [t.to_dict() for t in self.store.get_trades(user_id, asset_type, symbol)]

    # =========================================================================
    # Trading
    # =========================================================================

    def buy(self, user_id: str, asset_type: str, symbol: str, quantity) -> BuyResult:
        """
        Buy an asset at the current price.

        Raises:
            ValidationError, AccountNotFound: Bad request
            PriceUnavailable, StaleData: No tradeable price
            InsufficientBalance: Balance below total cost
            TradeExecutionFailed: Write failed; state restored
            ReconciliationError: Write failed and restoring failed
        """
        return self._execute(user_id, asset_type, symbol, quantity, "buy")

    def sell(self, user_id: str, asset_type: str, symbol: str, quantity) -> SellResult:
        """
        Sell part or all of a holding at the current price.

        Raises:
            ValidationError, AccountNotFound: Bad request, or proceeds
                smaller than fees
            InsufficientHoldings: Nothing held, or not enough
            PriceUnavailable, StaleData: No tradeable price
            TradeExecutionFailed: Write failed; state restored
            ReconciliationError: Write failed and restoring failed
        """
        return self._execute(user_id, asset_type, symbol, quantity, "sell")

    def _validate(self, asset_type: str, symbol: str, quantity, side: str):
        """Canonical symbol and Decimal quantity, or ValidationError."""
        if side not in ("buy", "sell"):
            raise ValidationError(f"Side must be 'buy' or 'sell', got {side!r}")
        if asset_type not in ASSET_TYPES:
            raise ValidationError(f"Invalid asset type {asset_type!r}. Must be one of {ASSET_TYPES}")

        qty = to_decimal(quantity)
        if not qty.is_finite() or qty <= ZERO:
            raise ValidationError(f"Quantity must be a positive number, got {quantity!r}")

        return self.resolver.normalize(asset_type, symbol), qty

    def _execute(self, user_id: str, asset_type: str, symbol: str, quantity, side: str):
        states: List[TradeState] = []

        def advance(state: TradeState) -> None:
            states.append(state)
            logger.debug(f"{side} {user_id} {asset_type}:{symbol} -> {state.value}")

        try:
            symbol, quantity = self._validate(asset_type, symbol, quantity, side)
            self.store.get_account(user_id)
            key = (user_id, asset_type, symbol)
            if side == "sell" and self.store.get_holding(*key) is None:
                raise InsufficientHoldings(
                    symbol, ZERO, quantity, unit=UNIT_NAMES.get(asset_type, "units")
                )
            advance(TradeState.VALIDATED)

            quote = self.resolver.resolve(asset_type, symbol)
            advance(TradeState.QUOTED)

            fees = FeeCalculator(self.fee_policy.get_policy()).calculate_fee_breakdown(
                quote.price * quantity, side
            )
            advance(TradeState.FEE_COMPUTED)

            for attempt in range(1, self.max_retries + 1):
                try:
                    return self._apply(key, side, quantity, quote, fees, states, advance)
                except PersistenceConflict as e:
                    logger.warning(f"Attempt {attempt}/{self.max_retries}: {e.message}")

            raise TradeExecutionFailed(
                f"Gave up on {side} of {symbol} for {user_id} after "
                f"{self.max_retries} conflicting updates"
            )
        except Exception as e:
            advance(TradeState.FAILED)
            if isinstance(e, TradingError):
                e.states = list(states)
            raise

    def _apply(self, key, side, quantity, quote: Quote, fees: FeeBreakdown, states, advance):
        """Balance check, apply and commit under the user's lock."""
        user_id, asset_type, symbol = key

        with self.store.user_lock(user_id):
            account = self.store.get_account(user_id)
            holding = self.store.get_holding(*key)
            now = self._clock()
            timestamp = self.store.next_trade_timestamp(key, now)

            if side == "buy":
                check = validate_buy_order(account.balance, fees)
                if not check["has_sufficient_balance"]:
                    raise InsufficientBalance(fees.total_cost, account.balance, fees=fees)
                advance(TradeState.BALANCE_CHECKED)
                new_holding = apply_buy(holding, quantity, quote.price, fees.total_cost, key, timestamp.isoformat())
            else:
                try:
                    new_holding = apply_sell(holding, quantity, symbol, asset_type, timestamp.isoformat())
                except InsufficientHoldings as e:
                    e.fees = fees
                    raise
                performance = sell_performance(holding, quantity, fees)

            new_balance = account.balance + fees.balance_delta
            trade = Trade(
                id=self.store.new_trade_id(),
                user_id=user_id,
                asset_type=asset_type,
                symbol=symbol,
                side=side,
                quantity=quantity,
                price=quote.price,
                fees=fees,
                timestamp=timestamp,
                balance_after=new_balance,
                price_source=quote.source,
            )

            try:
                updated = self.store.apply(account.version, new_balance, key, new_holding, trade)
            except PersistenceFailure as e:
                raise TradeExecutionFailed(f"Trade failed and was rolled back: {e.message}", cause=e) from e
            advance(TradeState.APPLIED)

        advance(TradeState.COMMITTED)
        logger.info(
            f"{side.upper()} {quantity} {asset_type}:{symbol} @ {quote.price} for {user_id} "
            f"(fees {fees.total_fees}, platform revenue {platform_revenue(fees)}, "
            f"balance {updated.balance})"
        )

        if side == "buy":
            return BuyResult(
                trade=trade,
                fees=fees,
                new_balance=updated.balance,
                holding=new_holding,
                quote=quote,
                states=list(states),
            )

        return SellResult(
            trade=trade,
            fees=fees,
            new_balance=updated.balance,
            remaining_quantity=new_holding.quantity if new_holding else ZERO,
            profit_loss=performance["profit_loss"],
            profit_loss_pct=performance["profit_loss_pct"],
            cost_basis=performance["cost_basis"],
            gross_proceeds=performance["gross_proceeds"],
            net_proceeds=performance["net_proceeds"],
            quote=quote,
            states=list(states),
        )
