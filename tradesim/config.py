"""
Central configuration for the paper trading engine.

This module serves as the single source of truth for all constants,
thresholds, feed endpoints and defaults used throughout the system.
"""

from pathlib import Path
from typing import Dict, List, Any
import logging

# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVEL = logging.INFO


def setup_logging(level: int = LOG_LEVEL) -> None:
    """Configure logging for the application."""
    logging.basicConfig(format=LOG_FORMAT, level=level)


# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root (parent of tradesim/)
PROJECT_ROOT = Path(__file__).parent.parent

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
CACHE_DIR = DATA_DIR / "cache"
STORE_DIR = DATA_DIR / "store"

# Default file paths
SETTINGS_PATH = DATA_DIR / "settings.yaml"
ASSET_STORE_PATH = CACHE_DIR / "asset_prices.parquet"
ACCOUNTS_FILE = "account.json"      # Per user, under STORE_DIR/<user>
TRADES_FILE = "trades.jsonl"       # Per user, under STORE_DIR/<user>

# =============================================================================
# ASSET CLASSES
# =============================================================================

ASSET_TYPES: List[str] = ["stock", "crypto", "currency"]
TRADE_SIDES: List[str] = ["buy", "sell"]

# Single reporting currency for balances, prices and fees
REPORTING_CURRENCY = "KES"

# Unit naming used in user-facing messages
UNIT_NAMES: Dict[str, str] = {
    "stock": "shares",
    "crypto": "units",
    "currency": "units",
}

# =============================================================================
# FEE POLICY
# =============================================================================

FEE_POLICY_DEFAULTS: Dict[str, float] = {
    "platform_fee_pct": 0.5,   # % of notional
    "tax_pct": 0.1,            # % of notional, never clamped
    "min_fee": 10.0,           # Floor on the platform fee
    "max_fee": 1000.0,         # Ceiling on the platform fee
}

# (lower, upper) bounds accepted by the settings endpoint; None = unbounded
FEE_POLICY_BOUNDS: Dict[str, tuple] = {
    "platform_fee_pct": (0.0, 10.0),
    "tax_pct": (0.0, 5.0),
    "min_fee": (0.0, None),
    "max_fee": (0.0, None),
}

# Fee settings may be served up to this many seconds stale
FEE_POLICY_CACHE_TTL = 5.0

# =============================================================================
# PRICE RESOLUTION
# =============================================================================

PRICE_MAX_AGE_MINUTES = 5       # Quotes older than this are untradeable
LIVE_FETCH_TIMEOUT = 5.0        # Seconds per live adapter call
FX_RATE_CACHE_TTL = 5 * 60      # Seconds an FX rate is reused

# =============================================================================
# ACCOUNTS & EXECUTION
# =============================================================================

DEFAULT_STARTING_BALANCE = 100_000.0
EXECUTION_CONFLICT_RETRIES = 3
DEFAULT_TRADE_HISTORY_LIMIT = 50

# =============================================================================
# LIVE FEED CONFIGURATION
# =============================================================================

BINANCE_CONFIG: Dict[str, Any] = {
    "base_url": "https://api.binance.com/api/v3",
    "ticker_endpoint": "/ticker/24hr",
    "quote_asset": "USDT",
}

FX_API_CONFIG: Dict[str, Any] = {
    "base_url": "https://api.exchangerate-api.com/v4/latest",
    "base_currency": "USD",
}

HTTP_HEADERS: Dict[str, str] = {
    "User-Agent": "tradesim/1.0",
}

# Tracked crypto universe (Binance pairs quoted in USDT)
CRYPTO_SYMBOLS: List[str] = [
    "BTCUSDT", "ETHUSDT", "BNBUSDT", "XRPUSDT", "ADAUSDT",
    "SOLUSDT", "DOGEUSDT", "DOTUSDT", "AVAXUSDT", "SHIBUSDT",
    "MATICUSDT", "LTCUSDT", "UNIUSDT", "LINKUSDT", "ATOMUSDT",
    "XLMUSDT", "BCHUSDT", "FILUSDT", "TRXUSDT", "ETCUSDT",
]

# Tracked FX universe, quoted in the reporting currency
CURRENCY_PAIRS: List[str] = [
    "USD/KES", "EUR/KES", "GBP/KES", "JPY/KES", "CAD/KES",
    "AUD/KES", "CHF/KES", "CNY/KES", "INR/KES", "ZAR/KES",
    "NGN/KES", "EGP/KES", "GHS/KES",
]

# Equity tickers are passed to yfinance with this exchange suffix (empty = US)
STOCK_SYMBOL_SUFFIX = ""

# Currency yfinance quotes equities in; converted to REPORTING_CURRENCY
STOCK_PRICE_CURRENCY = "USD"
