"""Trade execution, pricing, fees and position modules."""

from .fee_calculator import FeeCalculator, FeePolicy, FeeBreakdown, compute_fees
from .fee_policy import FeePolicyProvider
from .position_manager import Holding, apply_buy, apply_sell, realized_pnl
from .price_resolver import PriceResolver, Quote
from .account_store import Account, AccountStore, Trade
from .execution_engine import TradeExecutor, TradeState, BuyResult, SellResult

__all__ = [
    "FeeCalculator",
    "FeePolicy",
    "FeeBreakdown",
    "compute_fees",
    "FeePolicyProvider",
    "Holding",
    "apply_buy",
    "apply_sell",
    "realized_pnl",
    "PriceResolver",
    "Quote",
    "Account",
    "AccountStore",
    "Trade",
    "TradeExecutor",
    "TradeState",
    "BuyResult",
    "SellResult",
]
