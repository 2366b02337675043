"""Tests for fee calculation and the fee policy provider."""

from decimal import Decimal

import pytest
import yaml

from tradesim.errors import InvalidFeePolicy, ValidationError
from tradesim.trading.fee_calculator import (
    FeeBreakdown,
    FeeCalculator,
    FeePolicy,
    compute_fees,
    format_fee_info,
    platform_revenue,
    to_decimal,
    validate_buy_order,
)
from tradesim.trading.fee_policy import FeePolicyProvider


@pytest.fixture
def policy():
    return FeePolicy.from_dict(
        {"platform_fee_pct": 0.5, "tax_pct": 0.1, "min_fee": 10, "max_fee": 1000}
    )


class TestComputeFees:
    """Tests for the pure fee function."""

    def test_buy_hits_minimum_fee(self, policy):
        """Buy 10 @ 100: platform fee raised to the minimum."""
        fees = compute_fees(Decimal("10") * Decimal("100"), "buy", policy)

        assert fees.trade_amount == Decimal("1000")
        assert fees.platform_fee == Decimal("10")
        assert fees.tax_amount == Decimal("1")
        assert fees.total_fees == Decimal("11")
        assert fees.total_cost == Decimal("1011")

    def test_small_sell(self, policy):
        """Sell with trade amount 50: min fee applies, tax is not clamped."""
        fees = compute_fees(50, "sell", policy)

        assert fees.platform_fee == Decimal("10")
        assert fees.tax_amount == Decimal("0.05")
        assert fees.total_fees == Decimal("10.05")
        assert fees.net_amount == Decimal("39.95")

    def test_platform_fee_capped(self, policy):
        """Large trades hit the maximum platform fee; tax keeps scaling."""
        fees = compute_fees(1_000_000, "buy", policy)

        assert fees.platform_fee == Decimal("1000")
        assert fees.tax_amount == Decimal("1000")
        assert fees.total_fees == Decimal("2000")

    def test_proportional_band(self, policy):
        """Between min and max the fee is the plain percentage."""
        fees = compute_fees(10_000, "buy", policy)
        assert fees.platform_fee == Decimal("50")

    def test_fee_identities(self, policy):
        """platform + tax == total; buy and sell totals follow."""
        for notional in ["0.01", "123.45", "2500", "987654.321"]:
            buy = compute_fees(notional, "buy", policy)
            assert buy.platform_fee + buy.tax_amount == buy.total_fees
            assert buy.total_cost == buy.trade_amount + buy.total_fees

            if Decimal(notional) > Decimal("20"):
                sell = compute_fees(notional, "sell", policy)
                assert sell.net_amount == sell.trade_amount - sell.total_fees

    def test_sell_smaller_than_fees_rejected(self, policy):
        """Fees must never flip the sign of sell proceeds."""
        with pytest.raises(ValidationError) as exc:
            compute_fees(5, "sell", policy)

        assert exc.value.fees is not None
        assert exc.value.fees.net_amount < 0

    def test_unknown_side(self, policy):
        with pytest.raises(ValidationError):
            compute_fees(100, "short", policy)

    def test_balance_delta(self, policy):
        """Buys debit total cost, sells credit net proceeds."""
        assert compute_fees(1000, "buy", policy).balance_delta == Decimal("-1011")
        assert compute_fees(1000, "sell", policy).balance_delta == Decimal("989")

    def test_record_is_lossless(self, policy):
        fees = compute_fees("123.456789", "buy", policy)
        assert FeeBreakdown.from_record(fees.to_record()) == fees


class TestFeePolicy:
    """Tests for fee policy validation."""

    def test_rejects_unknown_key(self):
        data = {**FeePolicy.default().to_dict(), "bonus": 1}
        with pytest.raises(InvalidFeePolicy) as exc:
            FeePolicy.from_dict(data)
        assert exc.value.key == "bonus"

    def test_rejects_missing_key(self):
        data = FeePolicy.default().to_dict()
        del data["tax_pct"]
        with pytest.raises(InvalidFeePolicy):
            FeePolicy.from_dict(data)

    @pytest.mark.parametrize(
        "key,value",
        [
            ("platform_fee_pct", -1),
            ("platform_fee_pct", 50),
            ("tax_pct", 6),
            ("min_fee", -5),
            ("max_fee", "lots"),
            ("tax_pct", True),
            ("min_fee", float("nan")),
        ],
    )
    def test_rejects_bad_values(self, key, value):
        data = {**FeePolicy.default().to_dict(), key: value}
        with pytest.raises(InvalidFeePolicy):
            FeePolicy.from_dict(data)

    def test_rejects_min_above_max(self):
        data = {**FeePolicy.default().to_dict(), "min_fee": 2000}
        with pytest.raises(InvalidFeePolicy):
            FeePolicy.from_dict(data)


class TestFeeCalculator:
    """Tests for the calculator wrapper and display helpers."""

    def test_calculate_fee_breakdown(self, policy):
        calc = FeeCalculator(policy)
        assert calc.calculate_fee_breakdown(1000, "buy").total_fees == Decimal("11")

    def test_format_buy(self, policy):
        info = format_fee_info(compute_fees(1000, "buy", policy))
        assert info["user_pays"] == pytest.approx(1011)
        assert "Total cost: KES 1,011.00" in info["message"]

    def test_format_sell(self, policy):
        info = format_fee_info(compute_fees(50, "sell", policy))
        assert info["user_receives"] == pytest.approx(39.95)
        assert "receive" in info["message"]

    def test_validate_buy_order(self, policy):
        fees = compute_fees(1000, "buy", policy)

        ok = validate_buy_order(5000, fees)
        assert ok["has_sufficient_balance"]
        assert ok["shortfall"] == 0

        short = validate_buy_order(1000, fees)
        assert not short["has_sufficient_balance"]
        assert short["shortfall"] == Decimal("11")

    def test_platform_revenue(self, policy):
        assert platform_revenue(compute_fees(1000, "buy", policy)) == Decimal("11")

    def test_to_decimal_avoids_float_noise(self):
        assert to_decimal(0.1) == Decimal("0.1")
        with pytest.raises(ValidationError):
            to_decimal("abc")


class TestFeePolicyProvider:
    """Tests for the cached, YAML-backed fee policy provider."""

    @pytest.fixture
    def ticks(self):
        return {"now": 0.0}

    @pytest.fixture
    def provider(self, tmp_path, ticks):
        return FeePolicyProvider(
            settings_path=tmp_path / "settings.yaml",
            ttl=5.0,
            clock=lambda: ticks["now"],
        )

    def test_writes_defaults_when_missing(self, provider, tmp_path):
        policy = provider.get_policy()

        assert policy == FeePolicy.default()
        data = yaml.safe_load((tmp_path / "settings.yaml").read_text())
        assert data["fee_policy"]["min_fee"] == 10.0

    def test_update_persists_with_audit_fields(self, provider, tmp_path):
        provider.update_settings({"min_fee": 5}, updated_by="admin")

        settings = provider.get_settings()
        assert settings["min_fee"] == 5.0
        assert settings["updated_by"] == "admin"
        assert settings["last_updated"]

        reloaded = FeePolicyProvider(settings_path=tmp_path / "settings.yaml")
        assert reloaded.get_policy().min_fee == Decimal("5.0")

    def test_update_rejects_invalid(self, provider):
        with pytest.raises(InvalidFeePolicy):
            provider.update_settings({"platform_fee_pct": 99})
        with pytest.raises(InvalidFeePolicy):
            provider.update_settings({"surge_pct": 1})

        assert provider.get_policy() == FeePolicy.default()

    def test_failed_write_keeps_previous_policy(self, provider, tmp_path, monkeypatch):
        provider.get_policy()

        def broken(policy, updated_by, last_updated):
            raise OSError("read-only file system")

        monkeypatch.setattr(provider, "_save", broken)
        with pytest.raises(OSError):
            provider.update_settings({"min_fee": 5}, updated_by="admin")

        assert provider.get_policy() == FeePolicy.default()
        assert provider.get_settings()["updated_by"] is None
        data = yaml.safe_load((tmp_path / "settings.yaml").read_text())
        assert data["fee_policy"]["min_fee"] == 10.0

    def test_external_edit_visible_after_ttl(self, provider, tmp_path, ticks):
        """Reads are eventually consistent within the TTL."""
        provider.get_policy()

        data = yaml.safe_load((tmp_path / "settings.yaml").read_text())
        data["fee_policy"]["tax_pct"] = 0.2
        (tmp_path / "settings.yaml").write_text(yaml.safe_dump(data))

        ticks["now"] = 4.0
        assert provider.get_policy().tax_pct == Decimal("0.1")

        ticks["now"] = 5.0
        assert provider.get_policy().tax_pct == Decimal("0.2")

    def test_corrupt_file_keeps_last_policy(self, provider, tmp_path, ticks):
        provider.update_settings({"min_fee": 7})
        (tmp_path / "settings.yaml").write_text("fee_policy: {min_fee: -1}")

        provider.invalidate()
        assert provider.get_policy().min_fee == Decimal("7")

    def test_in_memory_provider(self):
        provider = FeePolicyProvider()
        provider.update_settings({"tax_pct": 0.2}, updated_by="ops")
        assert provider.get_policy().tax_pct == Decimal("0.2")
