"""Tests for P&L arithmetic, signal sizing and trade parameter calculation."""

from __future__ import annotations

import pytest

from signalbot.analytics.pnl import (
    calculate_pnl,
    calculate_pnl_percent,
    extract_base_asset,
    format_symbol,
    is_valid_quantity,
    parse_symbol,
    risk_reward_ratio,
    round_to_step,
    stop_loss_price,
    take_profit_price,
    value_pnl,
)
from signalbot.engine.errors import ValidationError
from signalbot.policy.position_sizer import (
    SymbolFilters,
    calculate_trade_params,
    size_signal_position,
)

from conftest import symbol_info


class TestPnl:
    def test_long_and_short(self) -> None:
        assert calculate_pnl(100, 110, 2, "LONG") == pytest.approx(20)
        assert calculate_pnl(100, 110, 2, "SHORT") == pytest.approx(-20)
        assert calculate_pnl_percent(100, 90, "SHORT") == pytest.approx(10)
        assert calculate_pnl_percent(0, 90, "LONG") == 0.0

    def test_value_pnl(self) -> None:
        pnl, pct = value_pnl(1000, 1100, "LONG")
        assert pnl == pytest.approx(100)
        assert pct == pytest.approx(10)
        pnl, pct = value_pnl(1000, 1100, "SHORT")
        assert pnl == pytest.approx(-100)
        assert value_pnl(0, 50, "LONG")[1] == 0.0

    def test_protective_levels(self) -> None:
        assert stop_loss_price(50000, 2, "LONG") == pytest.approx(49000)
        assert stop_loss_price(50000, 2, "SHORT") == pytest.approx(51000)
        assert take_profit_price(50000, 5, "LONG") == pytest.approx(52500)
        assert take_profit_price(50000, 5, "SHORT") == pytest.approx(47500)

    def test_risk_reward(self) -> None:
        assert risk_reward_ratio(100, 95, 110) == pytest.approx(2.0)
        assert risk_reward_ratio(100, 100, 110) == 0.0

    def test_round_to_step_floors(self) -> None:
        assert round_to_step(0.3, 0.1) == pytest.approx(0.3)
        assert round_to_step(0.123456, 0.001) == pytest.approx(0.123)
        assert round_to_step(1.5, 0) == 1.5

    def test_valid_quantity(self) -> None:
        assert is_valid_quantity(0.5, 0.1, 10, 0.1)
        assert not is_valid_quantity(0.05, 0.1, 10, 0.1)
        assert not is_valid_quantity(0.55, 0.1, 10, 0.1)

    def test_symbol_helpers(self) -> None:
        assert parse_symbol("ETHBTC") == ("ETH", "BTC")
        assert parse_symbol("XYZ") is None
        assert format_symbol("BTCUSDT") == "BTC/USDT"
        assert extract_base_asset("solusdc") == "SOL"
        assert extract_base_asset("ETHBTC") == "ETHBTC"


class TestSignalSizing:
    def test_percent_of_portfolio(self) -> None:
        size = size_signal_position(10000, 10, 50000)
        assert size.position_value == pytest.approx(1000)
        assert size.quantity == pytest.approx(0.02)
        assert size.capped_by == "percent"

    def test_leverage_scales_quantity(self) -> None:
        size = size_signal_position(10000, 10, 50000, leverage=3)
        assert size.quantity == pytest.approx(0.06)

    def test_capped_by_max_position_size(self) -> None:
        size = size_signal_position(10000, 50, 100, max_position_size=2000)
        assert size.position_value == pytest.approx(2000)
        assert size.capped_by == "max_position_size"

    def test_zero_portfolio_value(self) -> None:
        with pytest.raises(ValidationError, match="sync your exchange"):
            size_signal_position(0, 10, 50000)


class TestTradeParams:
    def _filters(self) -> SymbolFilters:
        return SymbolFilters.from_symbol_info(symbol_info())

    def test_filters_from_symbol_info(self) -> None:
        filters = self._filters()
        assert filters.step_size == pytest.approx(0.00001)
        assert filters.tick_size == pytest.approx(0.01)
        assert filters.min_notional == pytest.approx(5)

    def test_market_quantity_with_protection(self) -> None:
        params = calculate_trade_params(
            side="BUY", order_type="MARKET", current_price=50000,
            filters=self._filters(), quantity=0.0212345,
            stop_loss_percent=2, take_profit_percent=4,
        )
        assert params.quantity == "0.02123000"
        assert params.quote_order_qty is None
        assert params.expected_price == 50000
        assert params.stop_loss_price == pytest.approx(49000)
        assert params.take_profit_price == pytest.approx(52000)

    def test_market_quote_order(self) -> None:
        params = calculate_trade_params(
            side="BUY", order_type="MARKET", current_price=50000,
            filters=self._filters(), quote_order_qty=100,
        )
        assert params.quantity is None
        assert params.quote_order_qty == "100.00000000"
        assert params.estimated_quantity == pytest.approx(0.002)

    def test_limit_price_rounded_to_tick(self) -> None:
        params = calculate_trade_params(
            side="SELL", order_type="LIMIT", current_price=50000,
            filters=self._filters(), quantity=0.01, limit_price=51000.456,
        )
        assert params.price == "51000.45000000"
        assert params.expected_price == pytest.approx(51000.45)

    def test_limit_without_price(self) -> None:
        with pytest.raises(ValidationError, match="Price required"):
            calculate_trade_params(
                side="BUY", order_type="LIMIT", current_price=50000,
                filters=self._filters(), quantity=0.01,
            )

    def test_below_min_notional(self) -> None:
        with pytest.raises(ValidationError, match="minimum notional"):
            calculate_trade_params(
                side="BUY", order_type="MARKET", current_price=50000,
                filters=self._filters(), quantity=0.00005,
            )

    def test_requires_size(self) -> None:
        with pytest.raises(ValidationError):
            calculate_trade_params(
                side="BUY", order_type="MARKET", current_price=50000, filters=self._filters(),
            )
