"""Tests for price resolution and freshness."""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import FakeFetcher, observation
from tradesim.errors import PriceUnavailable, StaleData, ValidationError
from tradesim.trading.price_resolver import PriceResolver, Quote


class TestResolve:
    """Tests for the store -> live -> failure chain."""

    def test_fresh_store_price_wins(self, resolver, priced, fetchers):
        quote = resolver.resolve("stock", "aapl")

        assert quote.price == Decimal("100.0")
        assert quote.source == "store"
        assert fetchers["stock"].calls == 0

    def test_missing_store_price_goes_live(self, resolver, fetchers, asset_store):
        quote = resolver.resolve("crypto", "btcusdt")

        assert quote.source == "live"
        assert quote.symbol == "BTCUSDT"
        assert fetchers["crypto"].calls == 1
        assert asset_store.get_latest_price("crypto", "BTCUSDT") is None

    def test_stale_store_price_goes_live(self, resolver, asset_store, fetchers, clock):
        asset_store.record(observation("stock", "AAPL", 90.0, clock() - timedelta(minutes=10)))

        quote = resolver.resolve("stock", "AAPL")

        assert quote.source == "live"
        assert quote.price == Decimal("100.0")

    def test_live_failure_is_unavailable(self, asset_store, clock):
        fetcher = FakeFetcher("stock", clock=clock, error=ConnectionError("feed down"))
        resolver = PriceResolver(asset_store, {"stock": fetcher}, timeout=1.0, clock=clock)

        with pytest.raises(PriceUnavailable) as exc:
            resolver.resolve("stock", "AAPL")
        assert "feed down" in exc.value.reason
        resolver.shutdown()

    def test_live_failure_never_falls_back_to_stale(self, asset_store, clock):
        """An old stored price is not used when the live feed fails."""
        asset_store.record(observation("stock", "AAPL", 90.0, clock() - timedelta(hours=1)))
        fetcher = FakeFetcher("stock", clock=clock, error=ConnectionError("feed down"))
        resolver = PriceResolver(asset_store, {"stock": fetcher}, timeout=1.0, clock=clock)

        with pytest.raises(PriceUnavailable):
            resolver.resolve("stock", "AAPL")
        resolver.shutdown()

    def test_live_timeout_is_unavailable(self, asset_store, clock):
        fetcher = FakeFetcher("stock", {"AAPL": 100.0}, clock, delay=0.5)
        resolver = PriceResolver(asset_store, {"stock": fetcher}, timeout=0.05, clock=clock)

        with pytest.raises(PriceUnavailable) as exc:
            resolver.resolve("stock", "AAPL")
        assert "timed out" in exc.value.reason
        resolver.shutdown()

    def test_stale_live_quote_rejected(self, asset_store, clock):
        fetcher = FakeFetcher("stock", {"AAPL": 100.0}, clock, age=timedelta(minutes=6))
        resolver = PriceResolver(asset_store, {"stock": fetcher}, timeout=1.0, clock=clock)

        with pytest.raises(StaleData) as exc:
            resolver.resolve("stock", "AAPL")
        assert exc.value.age_seconds == pytest.approx(360)
        resolver.shutdown()

    def test_non_positive_live_price_rejected(self, asset_store, clock):
        fetcher = FakeFetcher("stock", {"AAPL": 0.0}, clock)
        resolver = PriceResolver(asset_store, {"stock": fetcher}, timeout=1.0, clock=clock)

        with pytest.raises(StaleData):
            resolver.resolve("stock", "AAPL")
        resolver.shutdown()

    def test_unknown_asset_type(self, resolver):
        with pytest.raises(ValidationError):
            resolver.resolve("bond", "UST10Y")

    def test_equal_timestamps_latest_write_wins(self, resolver, asset_store, clock):
        """Observations sharing a timestamp resolve to the last one written."""
        ts = clock()
        asset_store.record(observation("stock", "AAPL", 101.0, ts))
        asset_store.record(observation("stock", "AAPL", 102.0, ts))

        assert resolver.resolve("stock", "AAPL").price == Decimal("102.0")

    def test_market_time_beats_write_order(self, resolver, asset_store, clock):
        """A later write with an older timestamp does not win."""
        asset_store.record(observation("stock", "AAPL", 101.0, clock()))
        asset_store.record(observation("stock", "AAPL", 99.0, clock() - timedelta(minutes=1)))

        assert resolver.resolve("stock", "AAPL").price == Decimal("101.0")


class TestFreshness:
    """Tests for is_fresh."""

    def _quote(self, clock, age, price="100"):
        return Quote("stock", "AAPL", Decimal(price), clock() - age, "store")

    def test_exactly_five_minutes_is_fresh(self, resolver, clock):
        assert resolver.is_fresh(self._quote(clock, timedelta(minutes=5)))

    def test_older_than_five_minutes_rejected(self, resolver, clock):
        """Any price older than the threshold is rejected regardless of value."""
        with pytest.raises(StaleData):
            resolver.is_fresh(self._quote(clock, timedelta(minutes=5, seconds=1)))

    def test_negative_price_rejected(self, resolver, clock):
        with pytest.raises(StaleData):
            resolver.is_fresh(self._quote(clock, timedelta(0), price="-1"))


class TestReadOnlyViews:
    """Tests for get_asset_price and validate_asset_price."""

    def test_get_asset_price_shape(self, resolver, asset_store, clock):
        asset_store.record(observation("currency", "USD/KES", 129.5, clock(), change=0.5))

        data = resolver.get_asset_price("currency", "USD/KES")

        assert set(data) >= {"price", "change", "change_percent", "volume", "timestamp"}
        assert data["price"] == pytest.approx(129.5)
        assert data["change"] == pytest.approx(0.5)

    def test_validate_tradeable(self, resolver, priced):
        report = resolver.validate_asset_price("stock", "AAPL")

        assert report["is_tradeable"] is True
        assert report["reason"] is None
        assert report["quote"]["source"] == "store"

    def test_validate_degraded(self, asset_store, clock):
        asset_store.record(observation("stock", "AAPL", 90.0, clock() - timedelta(hours=2)))
        fetcher = FakeFetcher("stock", clock=clock, error=ConnectionError("feed down"))
        resolver = PriceResolver(asset_store, {"stock": fetcher}, timeout=1.0, clock=clock)

        report = resolver.validate_asset_price("stock", "AAPL")

        assert report["is_tradeable"] is False
        assert report["quote"]["source"] == "degraded"
        assert report["age_seconds"] == pytest.approx(7200)
        assert "feed down" in report["reason"]
        resolver.shutdown()

    def test_validate_nothing_known(self, asset_store, clock):
        fetcher = FakeFetcher("stock", clock=clock)
        resolver = PriceResolver(asset_store, {"stock": fetcher}, timeout=1.0, clock=clock)

        report = resolver.validate_asset_price("stock", "NOPE")

        assert report["is_tradeable"] is False
        assert report["quote"] is None
        resolver.shutdown()
