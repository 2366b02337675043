"""
Equity price fetcher backed by yfinance.
"""

import logging
from typing import Optional

import pandas as pd

from ..config import (
    LIVE_FETCH_TIMEOUT,
    REPORTING_CURRENCY,
    STOCK_PRICE_CURRENCY,
    STOCK_SYMBOL_SUFFIX,
)
from .base_fetcher import LiveFetcher, PriceObservation
from .fx_fetcher import FXFetcher

logger = logging.getLogger(__name__)


class StockFetcher(LiveFetcher):
    """
    Live equity adapter.

    Downloads the last two sessions of one-minute bars and reports the most
    recent close, converted into the reporting currency. Change is measured
    against the previous session's last close.

    Example:
        stocks = StockFetcher(fx_fetcher=FXFetcher())
        obs = stocks.fetch("aapl")
    """

    asset_type = "stock"

    def __init__(
        self,
        fx_fetcher: Optional[FXFetcher] = None,
        asset_store=None,
        timeout: float = LIVE_FETCH_TIMEOUT,
        suffix: str = STOCK_SYMBOL_SUFFIX,
        price_currency: str = STOCK_PRICE_CURRENCY,
    ):
        super().__init__(asset_store=asset_store, timeout=timeout)
        self.fx = fx_fetcher or FXFetcher(timeout=timeout)
        self.suffix = suffix
        self.price_currency = price_currency.upper()

    def normalize_symbol(self, symbol: str) -> str:
        return symbol.strip().upper()

    def _download(self, ticker: str) -> pd.DataFrame:
        """Recent intraday bars for one ticker."""
        import yfinance as yf

        bars = yf.download(
            ticker,
            period="2d",
            interval="1m",
            progress=False,
            timeout=self.timeout,
        )

        # Handle potential MultiIndex columns
        if isinstance(bars.columns, pd.MultiIndex):
            bars = bars.droplevel(1, axis=1)

        return bars

    def fetch(self, symbol: str) -> PriceObservation:
        """
        Fetch the latest bar for one ticker.

        Raises:
            ValueError: yfinance returned no usable bars
        """
        symbol = self.normalize_symbol(symbol)
        bars = self._download(f"{symbol}{self.suffix}")

        if bars.empty or "Close" not in bars.columns:
            raise ValueError(f"No price data returned for {symbol}")
        bars = bars.dropna(subset=["Close"])
        if bars.empty:
            raise ValueError(f"No price data returned for {symbol}")

        sessions = pd.DatetimeIndex(bars.index).normalize()
        last_session = sessions[-1]
        today = bars[sessions == last_session]
        earlier = bars[sessions < last_session]

        last_close = float(today["Close"].iloc[-1])
        reference = float(earlier["Close"].iloc[-1]) if not earlier.empty else float(today["Close"].iloc[0])
        volume = float(today["Volume"].sum()) if "Volume" in today.columns else 0.0

        rate = self.fx.get_rate(self.price_currency, REPORTING_CURRENCY)
        change = last_close - reference
        change_percent = change / reference * 100 if reference else 0.0

        obs = PriceObservation(
            asset_type=self.asset_type,
            symbol=symbol,
            price=last_close * rate,
            timestamp=pd.Timestamp(bars.index[-1]).to_pydatetime(),
            change=change * rate,
            change_percent=change_percent,
            volume=volume,
            source="yfinance",
            metadata={
                "ticker": f"{symbol}{self.suffix}",
                "native_price": last_close,
                "native_currency": self.price_currency,
            },
        )
        self._record([obs])
        logger.info(f"Fetched {symbol}: {REPORTING_CURRENCY} {obs.price:,.2f}")
        return obs
