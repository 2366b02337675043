"""Shared fixtures: controllable clocks, fake live feeds and a wired executor."""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from tradesim.data.asset_store import AssetStore
from tradesim.data.base_fetcher import LiveFetcher, PriceObservation
from tradesim.trading.account_store import AccountStore
from tradesim.trading.execution_engine import TradeExecutor
from tradesim.trading.fee_policy import FeePolicyProvider
from tradesim.trading.price_resolver import PriceResolver

NOW = datetime(2024, 6, 3, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeFetcher(LiveFetcher):
    """Live feed serving fixed prices stamped with the fake clock."""

    def __init__(self, asset_type, prices=None, clock=None, asset_store=None,
                 error=None, delay=0.0, age=None):
        super().__init__(asset_store=asset_store, timeout=1.0)
        self.asset_type = asset_type
        self.prices = dict(prices or {})
        self.clock = clock or FakeClock()
        self.error = error
        self.delay = delay
        self.age = age or timedelta(0)
        self.calls = 0
        self._lock = threading.Lock()

    def normalize_symbol(self, symbol):
        return symbol.strip().upper()

    def fetch(self, symbol):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if symbol not in self.prices:
            raise KeyError(f"unknown symbol {symbol}")

        obs = PriceObservation(
            asset_type=self.asset_type,
            symbol=symbol,
            price=self.prices[symbol],
            timestamp=self.clock() - self.age,
            source="fake",
        )
        self._record([obs])
        return obs


def observation(asset_type, symbol, price, timestamp, change=0.0):
    return PriceObservation(
        asset_type=asset_type,
        symbol=symbol,
        price=price,
        timestamp=timestamp,
        change=change,
        source="test",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def asset_store(tmp_path):
    return AssetStore(path=tmp_path / "prices.parquet")


@pytest.fixture
def fetchers(clock):
    return {
        "stock": FakeFetcher("stock", {"AAPL": 100.0}, clock),
        "crypto": FakeFetcher("crypto", {"BTCUSDT": 100.0}, clock),
        "currency": FakeFetcher("currency", {"USD/KES": 130.0}, clock),
    }


@pytest.fixture
def resolver(asset_store, fetchers, clock):
    resolver = PriceResolver(asset_store, fetchers, timeout=1.0, clock=clock)
    yield resolver
    resolver.shutdown()


@pytest.fixture
def account_store():
    return AccountStore()


@pytest.fixture
def fee_policy():
    return FeePolicyProvider()


@pytest.fixture
def executor(account_store, resolver, fee_policy, clock):
    executor = TradeExecutor(account_store, resolver, fee_policy, clock=clock)
    executor.open_account("alice", 100000)
    return executor


@pytest.fixture
def priced(asset_store, clock):
    """Seed a fresh store price of 100 for AAPL."""
    asset_store.record(observation("stock", "AAPL", 100.0, clock()))
    return asset_store
