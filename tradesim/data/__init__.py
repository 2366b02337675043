"""Price data: live adapters, FX rate cache and the unified asset store."""

from .asset_store import AssetStore
from .base_fetcher import LiveFetcher, PriceObservation
from .crypto_fetcher import CryptoFetcher
from .fx_fetcher import FXFetcher
from .rate_cache import RateCache
from .stock_fetcher import StockFetcher

__all__ = [
    "AssetStore",
    "LiveFetcher",
    "PriceObservation",
    "CryptoFetcher",
    "FXFetcher",
    "RateCache",
    "StockFetcher",
]
