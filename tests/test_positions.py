"""Tests for weighted-average position accounting."""

from decimal import Decimal

import pytest

from tradesim.errors import InsufficientHoldings, ValidationError
from tradesim.trading.fee_calculator import FeePolicy, compute_fees
from tradesim.trading.position_manager import (
    Holding,
    apply_buy,
    apply_sell,
    portfolio_summary,
    realized_pnl,
    sell_performance,
)

KEY = ("alice", "stock", "AAPL")


@pytest.fixture
def holding():
    return apply_buy(None, 10, 100, 1011, key=KEY)


class TestApplyBuy:
    """Tests for buys."""

    def test_first_buy(self, holding):
        assert holding.key == KEY
        assert holding.quantity == Decimal("10")
        assert holding.avg_buy_price == Decimal("100")
        assert holding.avg_cost_basis == Decimal("101.1")

    def test_weighted_average(self, holding):
        """Two buys at different prices average by quantity."""
        updated = apply_buy(holding, 30, 200, 6000)

        assert updated.quantity == Decimal("40")
        assert updated.avg_buy_price == Decimal("175")
        assert float(updated.avg_cost_basis) == pytest.approx((1011 + 6000) / 40)

    def test_cost_basis_without_fees(self):
        """With zero fees cost basis equals the weighted price."""
        first = apply_buy(None, 2, 10, 20, key=KEY)
        second = apply_buy(first, 3, 20, 60)
        assert second.avg_cost_basis == Decimal("16")

    def test_original_unchanged(self, holding):
        apply_buy(holding, 5, 100, 500)
        assert holding.quantity == Decimal("10")

    def test_new_holding_requires_key(self):
        with pytest.raises(ValueError):
            apply_buy(None, 1, 100, 100)

    def test_rejects_non_positive_quantity(self, holding):
        with pytest.raises(ValidationError):
            apply_buy(holding, 0, 100, 0)


class TestApplySell:
    """Tests for sells."""

    def test_partial_sell_keeps_averages(self, holding):
        updated = apply_sell(holding, 4)

        assert updated.quantity == Decimal("6")
        assert updated.avg_buy_price == holding.avg_buy_price
        assert updated.avg_cost_basis == holding.avg_cost_basis

    def test_full_sell_closes(self, holding):
        assert apply_sell(holding, 10) is None

    def test_oversell(self, holding):
        with pytest.raises(InsufficientHoldings) as exc:
            apply_sell(holding, 11)

        assert exc.value.held == Decimal("10")
        assert exc.value.requested == Decimal("11")
        assert "You own 10 AAPL" in exc.value.message
        assert "shares" in exc.value.message

    def test_nothing_held(self):
        with pytest.raises(InsufficientHoldings) as exc:
            apply_sell(None, 1, symbol="BTCUSDT", asset_type="crypto")
        assert "You don't own any units of BTCUSDT" in exc.value.message


class TestPerformance:
    """Tests for realized P&L and portfolio summaries."""

    def test_realized_pnl(self):
        assert realized_pnl(989, Decimal("101.1"), 10) == Decimal("-22.0")

    def test_sell_performance(self, holding):
        fees = compute_fees(1500, "sell", FeePolicy.default())
        perf = sell_performance(holding, 10, fees)

        assert perf["cost_basis"] == Decimal("1011.0")
        assert perf["gross_proceeds"] == Decimal("1500")
        assert perf["net_proceeds"] == fees.net_amount
        assert perf["profit_loss"] == fees.net_amount - Decimal("1011")
        assert float(perf["profit_loss_pct"]) == pytest.approx(float(perf["profit_loss"]) / 1011 * 100)

    def test_summary_at_cost(self, holding):
        summary = portfolio_summary(5000, [holding])

        assert summary["n_positions"] == 1
        assert summary["n_priced"] == 0
        assert summary["invested"] == Decimal("1011.0")
        assert summary["total_value"] == Decimal("6011.0")
        assert summary["unrealized_pnl"] == 0

    def test_summary_with_prices(self, holding):
        summary = portfolio_summary(0, [holding], {KEY: Decimal("120")})

        assert summary["market_value"] == Decimal("1200")
        assert summary["unrealized_pnl"] == Decimal("189.0")
        assert summary["positions"][0]["current_price"] == "120"

    def test_empty_summary(self):
        summary = portfolio_summary(100, [])
        assert summary["total_value"] == Decimal("100")
        assert summary["unrealized_pnl_pct"] == 0

    def test_dict_round_trip(self, holding):
        assert Holding.from_dict(holding.to_dict()) == holding
