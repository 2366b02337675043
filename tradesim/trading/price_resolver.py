"""
Price resolution.

Resolves one authoritative, freshness-checked quote per (asset_type, symbol)
from the unified asset store, falling back to the asset class's live feed
under a bounded timeout. There is no synthetic fallback: when neither source
yields a fresh positive price the trade must be refused.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional

from ..config import ASSET_TYPES, LIVE_FETCH_TIMEOUT, PRICE_MAX_AGE_MINUTES
from ..data.base_fetcher import LiveFetcher, PriceObservation
from ..errors import PriceUnavailable, StaleData, ValidationError
from .fee_calculator import ZERO, to_decimal

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Quote:
    """A resolved price. Never persisted by the resolver."""

    asset_type: str
    symbol: str
    price: Decimal
    timestamp: datetime
    source: str  # store | live | degraded
    change: float = 0.0
    change_percent: float = 0.0
    volume: float = 0.0

    @classmethod
    def from_observation(cls, obs: PriceObservation, source: str) -> "Quote":
        return cls(
            asset_type=obs.asset_type,
            symbol=obs.symbol,
            price=to_decimal(obs.price),
            timestamp=obs.timestamp,
            source=source,
            change=obs.change,
            change_percent=obs.change_percent,
            volume=obs.volume,
        )

    def age_seconds(self, now: datetime) -> float:
        """Seconds between the quote timestamp and now."""
        return (now - self.timestamp).total_seconds()

    def with_source(self, source: str) -> "Quote":
        return Quote(
            self.asset_type, self.symbol, self.price, self.timestamp, source,
            self.change, self.change_percent, self.volume,
        )

    def to_dict(self) -> Dict:
        """Convert to the public price shape."""
        return {
            "price": float(self.price),
            "change": self.change,
            "change_percent": self.change_percent,
            "volume": self.volume,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


class PriceResolver:
    """
    Resolves tradeable quotes.

    Lookup order is store, then live feed, then PriceUnavailable. A store
    observation that fails the freshness check triggers a live fetch; a live
    quote that fails it raises StaleData.

    Example:
        resolver = PriceResolver(store, {"crypto": CryptoFetcher()})
        quote = resolver.resolve("crypto", "btc")
        print(quote.price, quote.source)
    """

    def __init__(
        self,
        asset_store,
        fetchers: Dict[str, LiveFetcher],
        max_age_minutes: float = PRICE_MAX_AGE_MINUTES,
        timeout: float = LIVE_FETCH_TIMEOUT,
        clock: Callable[[], datetime] = _utcnow,
        max_workers: int = 4,
    ):
        """
        Initialize the resolver.

        Args:
            asset_store: AssetStore read for the latest observation
            fetchers: Live adapter per asset type
            max_age_minutes: Freshness threshold
            timeout: Seconds to wait for a live adapter
            clock: Wall clock returning aware datetimes (injectable for tests)
            max_workers: Threads available for concurrent live fetches
        """
        self.asset_store = asset_store
        self.fetchers = fetchers
        self.max_age = timedelta(minutes=max_age_minutes)
        self.timeout = timeout
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="price-fetch")

    def shutdown(self) -> None:
        """Stop the live fetch pool without waiting for hung calls."""
        self._pool.shutdown(wait=False)

    def normalize(self, asset_type: str, symbol: str) -> str:
        """
        Validate the asset type and return the canonical symbol.

        Raises:
            ValidationError: Unknown asset type or empty symbol
        """
        if asset_type not in ASSET_TYPES:
            raise ValidationError(f"Invalid asset type {asset_type!r}. Must be one of {ASSET_TYPES}")
        if not symbol or not str(symbol).strip():
            raise ValidationError("Symbol is required")

        fetcher = self.fetchers.get(asset_type)
        if fetcher is None:
            return str(symbol).strip().upper()
        return fetcher.normalize_symbol(str(symbol))

    def is_fresh(self, quote: Quote) -> bool:
        """
        Check a quote is tradeable.

        Returns:
            True when price > 0 and age <= max age

        Raises:
            StaleData: Otherwise
        """
        age = self._clock() - quote.timestamp
        if quote.price <= ZERO:
            raise StaleData(quote.asset_type, quote.symbol, f"non-positive price {quote.price}", age.total_seconds())
        if age > self.max_age:
            raise StaleData(
                quote.asset_type,
                quote.symbol,
                f"quote is {age.total_seconds():.0f}s old (max {self.max_age.total_seconds():.0f}s)",
                age.total_seconds(),
            )
        return True

    def _from_store(self, asset_type: str, symbol: str) -> Optional[Quote]:
        if self.asset_store is None:
            return None
        obs = self.asset_store.get_latest_price(asset_type, symbol)
        if obs is None:
            return None
        return Quote.from_observation(obs, "store")

    def _from_live(self, asset_type: str, symbol: str) -> Quote:
        """
        Fetch from the live adapter under the timeout.

        Raises:
            PriceUnavailable: No adapter, adapter error or timeout
        """
        fetcher = self.fetchers.get(asset_type)
        if fetcher is None:
            raise PriceUnavailable(asset_type, symbol, "no live feed configured")

        future = self._pool.submit(fetcher.fetch, symbol)
        try:
            obs = future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            logger.error(f"Live fetch timed out for {asset_type}:{symbol} after {self.timeout}s")
            raise PriceUnavailable(asset_type, symbol, f"live feed timed out after {self.timeout}s")
        except Exception as e:
            logger.error(f"Live fetch failed for {asset_type}:{symbol}: {e}")
            raise PriceUnavailable(asset_type, symbol, f"live feed failed: {e}") from e

        return Quote.from_observation(obs, "live")

    def resolve(self, asset_type: str, symbol: str) -> Quote:
        """
        Resolve a fresh quote.

        Args:
            asset_type: stock, crypto or currency
            symbol: Asset symbol (normalised per asset class)

        Returns:
            Quote tagged 'store' or 'live'

        Raises:
            ValidationError: Unknown asset type
            PriceUnavailable: No fresh store price and the live feed failed
            StaleData: The live feed returned an old or non-positive price
        """
        symbol = self.normalize(asset_type, symbol)

        stored = self._from_store(asset_type, symbol)
        if stored is not None:
            try:
                self.is_fresh(stored)
                return stored
            except StaleData as e:
                logger.warning(f"Stored price not usable, trying live feed: {e.message}")

        live = self._from_live(asset_type, symbol)
        self.is_fresh(live)
        return live

    def get_asset_price(self, asset_type: str, symbol: str) -> Dict:
        """Resolved price in the public shape. Read-only."""
        return self.resolve(asset_type, symbol).to_dict()

    def validate_asset_price(self, asset_type: str, symbol: str) -> Dict:
        """
        Report on price availability without raising price errors.

        When no fresh quote can be resolved, the last stored observation is
        reported with source 'degraded' and is_tradeable False.

        Returns:
            Dict with quote (or None), is_tradeable, age_seconds and reason
        """
        symbol = self.normalize(asset_type, symbol)
        now = self._clock()

        try:
            quote = self.resolve(asset_type, symbol)
            return {
                "asset_type": asset_type,
                "symbol": symbol,
                "quote": quote.to_dict(),
                "is_tradeable": True,
                "age_seconds": quote.age_seconds(now),
                "reason": None,
            }
        except (PriceUnavailable, StaleData) as e:
            stored = self._from_store(asset_type, symbol)
            return {
                "asset_type": asset_type,
                "symbol": symbol,
                "quote": stored.with_source("degraded").to_dict() if stored else None,
                "is_tradeable": False,
                "age_seconds": stored.age_seconds(now) if stored else None,
                "reason": e.reason,
            }
