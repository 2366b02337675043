"""
Crypto price fetcher.

Pulls 24h ticker data from Binance and converts USDT-quoted prices into the
reporting currency through the FX adapter.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from ..config import (
    BINANCE_CONFIG,
    CRYPTO_SYMBOLS,
    HTTP_HEADERS,
    LIVE_FETCH_TIMEOUT,
    REPORTING_CURRENCY,
)
from .base_fetcher import LiveFetcher, PriceObservation
from .fx_fetcher import FXFetcher

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CryptoFetcher(LiveFetcher):
    """
    Live crypto adapter backed by the Binance public API.

    Symbols are Binance pairs quoted in USDT (BTCUSDT); short aliases such as
    'btc' are expanded. USDT is treated as USD for conversion.

    Example:
        crypto = CryptoFetcher(fx_fetcher=FXFetcher())
        obs = crypto.fetch("BTC")
    """

    asset_type = "crypto"

    def __init__(
        self,
        fx_fetcher: Optional[FXFetcher] = None,
        asset_store=None,
        timeout: float = LIVE_FETCH_TIMEOUT,
        base_url: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the crypto fetcher.

        Args:
            fx_fetcher: FX adapter used for USD -> reporting currency
            asset_store: Optional AssetStore to record observations into
            timeout: HTTP timeout in seconds
            base_url: Override the Binance API base URL
            clock: Fallback clock when the ticker carries no close time
        """
        super().__init__(asset_store=asset_store, timeout=timeout)
        self.fx = fx_fetcher or FXFetcher(timeout=timeout)
        self.base_url = base_url or BINANCE_CONFIG["base_url"]
        self.quote_asset = BINANCE_CONFIG["quote_asset"]
        self._clock = clock

    def normalize_symbol(self, symbol: str) -> str:
        """'btc' -> 'BTCUSDT'; full pairs pass through upper-cased."""
        raw = symbol.strip().upper()
        if raw in CRYPTO_SYMBOLS or raw.endswith(self.quote_asset):
            return raw
        return f"{raw}{self.quote_asset}"

    def _make_request(self, params: Optional[Dict] = None) -> Any:
        """Call the 24h ticker endpoint."""
        url = f"{self.base_url}{BINANCE_CONFIG['ticker_endpoint']}"
        logger.debug(f"Request: {url} {params or ''}")
        response = requests.get(url, params=params, headers=HTTP_HEADERS, timeout=self.timeout)

        if response.status_code != 200:
            logger.error(f"Binance API error {response.status_code}: {response.text[:200]}")
            response.raise_for_status()

        return response.json()

    def _usd_rate(self) -> float:
        """Reporting-currency units per USD."""
        return self.fx.get_rate("USD", REPORTING_CURRENCY)

    def _parse_ticker(self, ticker: Dict, usd_rate: float) -> PriceObservation:
        """Convert one Binance ticker into an observation."""
        close_time = ticker.get("closeTime")
        if close_time:
            timestamp = datetime.fromtimestamp(int(close_time) / 1000, tz=timezone.utc)
        else:
            timestamp = self._clock()

        symbol = ticker["symbol"]
        return PriceObservation(
            asset_type=self.asset_type,
            symbol=symbol,
            price=float(ticker["lastPrice"]) * usd_rate,
            timestamp=timestamp,
            change=float(ticker.get("priceChange", 0)) * usd_rate,
            change_percent=float(ticker.get("priceChangePercent", 0)),
            volume=float(ticker.get("volume", 0)),
            source="binance",
            metadata={
                "base_asset": symbol[: -len(self.quote_asset)],
                "quote_asset": self.quote_asset,
                "usd_price": float(ticker["lastPrice"]),
                "trade_count": int(ticker.get("count", 0)),
            },
        )

    def fetch(self, symbol: str) -> PriceObservation:
        """Fetch the latest ticker for one pair."""
        pair = self.normalize_symbol(symbol)
        ticker = self._make_request({"symbol": pair})
        obs = self._parse_ticker(ticker, self._usd_rate())

        self._record([obs])
        logger.info(f"Fetched {pair}: {REPORTING_CURRENCY} {obs.price:,.2f}")
        return obs

    def refresh_all(self, symbols: Optional[List[str]] = None) -> List[PriceObservation]:
        """
        Fetch every tracked pair in one request and record them.

        Individual malformed tickers are skipped with a warning.
        """
        tracked = set(symbols or CRYPTO_SYMBOLS)
        tickers = self._make_request()
        usd_rate = self._usd_rate()

        observations = []
        for ticker in tickers:
            if ticker.get("symbol") not in tracked:
                continue
            try:
                observations.append(self._parse_ticker(ticker, usd_rate))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed ticker {ticker.get('symbol')}: {e}")

        self._record(observations)
        logger.info(f"Refreshed {len(observations)} crypto tickers")
        return observations
