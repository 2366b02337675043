"""
FX rate fetcher.

Pulls exchange rates from exchangerate-api and serves currency pairs quoted
in the reporting currency. Also provides the rate lookup used to convert
USD-quoted crypto prices, backed by an injected RateCache.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from ..config import (
    CURRENCY_PAIRS,
    FX_API_CONFIG,
    FX_RATE_CACHE_TTL,
    HTTP_HEADERS,
    LIVE_FETCH_TIMEOUT,
    REPORTING_CURRENCY,
)
from .base_fetcher import LiveFetcher, PriceObservation
from .rate_cache import RateCache

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FXFetcher(LiveFetcher):
    """
    Live FX adapter.

    Pairs are written BASE/QUOTE and priced as units of QUOTE per BASE.
    Upstream failures propagate; no fallback rates are substituted.

    Example:
        fx = FXFetcher(rate_cache=RateCache(ttl=300))
        obs = fx.fetch("usd/kes")
        rate = fx.get_rate("USD", "KES")
    """

    asset_type = "currency"

    def __init__(
        self,
        asset_store=None,
        timeout: float = LIVE_FETCH_TIMEOUT,
        rate_cache: Optional[RateCache] = None,
        base_url: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the FX fetcher.

        Args:
            asset_store: Optional AssetStore to record observations into
            timeout: HTTP timeout in seconds
            rate_cache: Cache for get_rate lookups (a private one if omitted)
            base_url: Override the API base URL
            clock: Wall clock for observation timestamps
        """
        super().__init__(asset_store=asset_store, timeout=timeout)
        self.rate_cache = rate_cache or RateCache(ttl=FX_RATE_CACHE_TTL)
        self.base_url = base_url or FX_API_CONFIG["base_url"]
        self._clock = clock

    def normalize_symbol(self, symbol: str) -> str:
        """
        Canonical BASE/QUOTE form.

        'usd/kes' and 'USDKES' become 'USD/KES'; a bare 'USD' is quoted in
        the reporting currency.
        """
        raw = symbol.strip().upper().replace("-", "/")
        if "/" in raw:
            base, quote = raw.split("/", 1)
        elif len(raw) == 6:
            base, quote = raw[:3], raw[3:]
        else:
            base, quote = raw, REPORTING_CURRENCY
        return f"{base}/{quote}"

    @staticmethod
    def split_pair(pair: str) -> Tuple[str, str]:
        """Split 'USD/KES' into ('USD', 'KES')."""
        base, quote = pair.split("/", 1)
        return base, quote

    def _make_request(self, base_currency: str) -> Dict[str, Any]:
        """
        Fetch the rate table for one base currency.

        Returns:
            JSON response with a 'rates' mapping
        """
        url = f"{self.base_url}/{base_currency}"
        logger.debug(f"Request: {url}")
        response = requests.get(url, headers=HTTP_HEADERS, timeout=self.timeout)

        if response.status_code != 200:
            logger.error(f"FX API error {response.status_code}: {response.text[:200]}")
            response.raise_for_status()

        data = response.json()
        if not isinstance(data.get("rates"), dict):
            raise ValueError(f"Malformed FX response for base {base_currency}")
        return data

    def _lookup_rate(self, from_currency: str, to_currency: str) -> float:
        """Uncached rate from the upstream API."""
        data = self._make_request(from_currency)
        rate = data["rates"].get(to_currency)
        if rate is None:
            raise ValueError(f"No rate for {from_currency}/{to_currency}")
        return float(rate)

    def get_rate(self, from_currency: str, to_currency: str) -> float:
        """
        Exchange rate from one currency to another, via the rate cache.

        Raises:
            requests.RequestException, ValueError: Upstream failure
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return 1.0

        return self.rate_cache.get_or_compute(
            from_currency,
            to_currency,
            lambda: self._lookup_rate(from_currency, to_currency),
        )

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        """Convert an amount between currencies."""
        return amount * self.get_rate(from_currency, to_currency)

    def _observation(self, pair: str, rate: float, timestamp: datetime, meta: Dict) -> PriceObservation:
        """Build an observation, deriving change from the previous stored rate."""
        change = 0.0
        change_percent = 0.0
        if self.asset_store is not None:
            previous = self.asset_store.get_latest_price(self.asset_type, pair)
            if previous is not None and previous.price > 0:
                change = rate - previous.price
                change_percent = change / previous.price * 100

        return PriceObservation(
            asset_type=self.asset_type,
            symbol=pair,
            price=rate,
            timestamp=timestamp,
            change=change,
            change_percent=change_percent,
            volume=0.0,
            source="exchangerate-api",
            metadata=meta,
        )

    def fetch(self, symbol: str) -> PriceObservation:
        """
        Fetch a fresh rate for one pair, bypassing the cache.

        The fetched rate refreshes the cache entry for the pair.
        """
        pair = self.normalize_symbol(symbol)
        base, quote = self.split_pair(pair)

        data = self._make_request(base)
        rate = data["rates"].get(quote)
        if rate is None:
            self.rate_cache.invalidate(base, quote)
            raise ValueError(f"No rate for {pair}")
        rate = float(rate)
        self.rate_cache.put(base, quote, rate)

        obs = self._observation(
            pair,
            rate,
            self._clock(),
            {
                "base_currency": base,
                "quote_currency": quote,
                "provider_updated": data.get("time_last_updated"),
            },
        )
        self._record([obs])
        logger.info(f"Fetched FX rate {pair}: {rate:.4f}")
        return obs

    def refresh_all(self, pairs: Optional[List[str]] = None) -> List[PriceObservation]:
        """
        Fetch and record every tracked pair from a single USD rate table.

        Replaces the rate cache with the new table. Pairs whose currencies
        are missing upstream are skipped with a warning.
        """
        pairs = pairs or CURRENCY_PAIRS
        usd = FX_API_CONFIG["base_currency"]
        data = self._make_request(usd)
        rates = data["rates"]
        timestamp = self._clock()
        # Full table replaces every cached rate
        self.rate_cache.clear_all()

        observations = []
        for pair in pairs:
            base, quote = self.split_pair(self.normalize_symbol(pair))
            base_per_usd = 1.0 if base == usd else rates.get(base)
            quote_per_usd = 1.0 if quote == usd else rates.get(quote)

            if not base_per_usd or quote_per_usd is None:
                logger.warning(f"Skipping {pair}: currency missing from FX feed")
                self.rate_cache.invalidate(base, quote)
                continue

            rate = float(quote_per_usd) / float(base_per_usd)
            self.rate_cache.put(base, quote, rate)
            observations.append(
                self._observation(
                    f"{base}/{quote}",
                    rate,
                    timestamp,
                    {"base_currency": base, "quote_currency": quote},
                )
            )

        self._record(observations)
        logger.info(f"Refreshed {len(observations)} currency pairs")
        return observations
