"""Tests for pre-trade validation, the trading engine and position closing."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from signalbot.connectors.binance_client import AssetBalance, BinanceAPIError
from signalbot.engine.errors import (
    InsufficientBalanceError,
    InvalidSymbolError,
    ValidationError,
    classify_error,
    validation_error,
)
from signalbot.engine.position_manager import PositionManager
from signalbot.engine.trading_engine import TradingEngine
from signalbot.execution.order_builder import TradeRequest, normalize_request
from signalbot.policy.risk_limits import required_amount, validate_trade_request
from signalbot.storage.models import PositionRecord

from conftest import make_client, symbol_info


def _request(exchange, **overrides) -> TradeRequest:
    defaults = dict(
        portfolio_id=exchange.portfolio_id, exchange=exchange,
        symbol="BTCUSDT", side="BUY", quantity=0.02,
    )
    defaults.update(overrides)
    return TradeRequest(**defaults)


class TestRiskLimits:
    def test_required_amount(self, exchange) -> None:
        buy = normalize_request(_request(exchange, quantity=0.5))
        assert required_amount(buy, 100) == pytest.approx(50)
        sell = normalize_request(_request(exchange, side="SELL", quantity=None, quote_order_qty=200))
        assert required_amount(sell, 100) == pytest.approx(2)

    @pytest.mark.asyncio
    async def test_spot_buy_passes(self, db, exchange, client) -> None:
        result = await validate_trade_request(db, client, normalize_request(_request(exchange)))
        assert result.is_valid
        assert result.data.current_price == 50000
        assert result.data.balance_asset == "USDT"

    @pytest.mark.asyncio
    async def test_spot_sell_checks_base_asset(self, db, exchange) -> None:
        client = make_client()
        client.get_balances = AsyncMock(return_value=[
            AssetBalance("USDT", 1_000_000.0, 0.0),
            AssetBalance("BTC", 0.01, 0.0),
        ])
        request = normalize_request(_request(exchange, side="SELL", quantity=0.02))
        result = await validate_trade_request(db, client, request)
        assert not result.is_valid
        assert "BTC" in result.errors[0]
        assert result.errors[0].startswith("Insufficient balance")

    @pytest.mark.asyncio
    async def test_margin_counts_borrowable(self, db, exchange, client) -> None:
        # 1000 USDT net plus 500 borrowable covers a 1250 USDT buy
        request = normalize_request(_request(exchange, account_type="MARGIN", quantity=0.025))
        result = await validate_trade_request(db, client, request)
        assert result.is_valid
        assert result.data.max_borrowable == 500.0

        no_borrow = normalize_request(_request(
            exchange, account_type="MARGIN", quantity=0.025, side_effect_type="NO_SIDE_EFFECT",
        ))
        result = await validate_trade_request(db, client, no_borrow)
        assert not result.is_valid

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, db, exchange) -> None:
        client = make_client(get_symbol_info=AsyncMock(return_value=None))
        result = await validate_trade_request(db, client, normalize_request(_request(exchange)))
        assert result.errors == ["Symbol BTCUSDT not found or not tradeable"]

    @pytest.mark.asyncio
    async def test_margin_not_allowed(self, db, exchange) -> None:
        client = make_client(get_symbol_info=AsyncMock(return_value=symbol_info(margin=False)))
        request = normalize_request(_request(exchange, account_type="MARGIN"))
        result = await validate_trade_request(db, client, request, check_balance=False)
        assert "Margin trading is not allowed for BTCUSDT" in result.errors

    @pytest.mark.asyncio
    async def test_bot_symbol_not_configured(self, db, exchange, bot, client) -> None:
        request = normalize_request(_request(
            exchange, symbol="SOLUSDT", source="SIGNAL_BOT", bot_id=bot.id,
        ))
        result = await validate_trade_request(db, client, request, check_balance=False)
        assert "Symbol SOLUSDT is not configured for this bot" in result.errors


class TestErrorClassification:
    def test_categories(self) -> None:
        assert classify_error(BinanceAPIError(-2010, "x")).category == "INSUFFICIENT_BALANCE"
        assert classify_error(BinanceAPIError(-1013, "x")).status_code == 502
        assert classify_error(ValidationError("Insufficient balance. Required")).category == (
            "INSUFFICIENT_BALANCE"
        )
        assert classify_error(ValidationError("bad")).status_code == 400
        assert classify_error(RuntimeError("???")).category == "UNKNOWN_ERROR"

    def test_symbol_errors(self) -> None:
        err = validation_error(["Symbol XYZUSDT not found or not tradeable"])
        assert isinstance(err, InvalidSymbolError)
        assert classify_error(err).category == "INVALID_SYMBOL"
        assert classify_error(err).status_code == 400
        plain = ValidationError("Symbol XYZUSDT not found or not tradeable")
        assert classify_error(plain).category == "INVALID_SYMBOL"

    def test_most_specific_validation_error(self) -> None:
        assert isinstance(
            validation_error(["Insufficient balance. Required: 1 USDT"]), InsufficientBalanceError,
        )
        assert type(validation_error(["Quantity too small"])) is ValidationError


class TestTradingEngine:
    @pytest.mark.asyncio
    async def test_dry_run_market_buy_opens_position(self, db, exchange, client, config) -> None:
        engine = TradingEngine(db, client, config)
        result = await engine.execute(_request(exchange, stop_loss=2, take_profit=4))

        assert result.success, result.errors
        assert result.status == "OPEN"
        assert result.executed_qty == pytest.approx(0.02)
        assert result.executed_price == pytest.approx(50000)

        position = db.get_position(result.position_id)
        assert position.side == "LONG"
        assert position.entry_value == pytest.approx(1000)
        assert position.stop_loss == pytest.approx(49000)
        assert position.take_profit == pytest.approx(52000)
        assert position.stop_loss_order_id and position.take_profit_order_id
        types = sorted(o.type for o in db.get_orders_for_position(position.id))
        assert types == ["ENTRY", "STOP_LOSS", "TAKE_PROFIT"]
        # balances are not checked when orders are simulated
        client.get_balances.assert_not_called()

        portfolio = db.get_portfolio(exchange.portfolio_id)
        assert portfolio.active_trades == 1

    @pytest.mark.asyncio
    async def test_margin_short_position(self, db, exchange, client, config) -> None:
        result = await TradingEngine(db, client, config).execute(
            _request(exchange, side=None, action="ENTER_SHORT", account_type="MARGIN")
        )
        position = db.get_position(result.position_id)
        assert position.side == "SHORT"
        assert position.margin_type == "CROSS"
        assert position.side_effect_type == "AUTO_BORROW_REPAY"

    @pytest.mark.asyncio
    async def test_validation_failure(self, db, exchange, client, config) -> None:
        result = await TradingEngine(db, client, config).execute(_request(exchange, quantity=0.00001))
        assert not result.success
        assert result.error_category == "VALIDATION_ERROR"
        assert result.status_code == 400
        assert db.list_positions(exchange.portfolio_id) == []

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_invalid_symbol(self, db, exchange, config) -> None:
        client = make_client(get_symbol_info=AsyncMock(return_value=None))
        result = await TradingEngine(db, client, config).execute(_request(exchange, symbol="XYZUSDT"))
        assert not result.success
        assert result.error_category == "INVALID_SYMBOL"
        assert result.status_code == 400
        assert result.error == "Symbol XYZUSDT not found or not tradeable"

    @pytest.mark.asyncio
    async def test_rejected_order_rolls_back(
self, db, exchange, config, monkeypatch) -> None:
        monkeypatch.setenv("ENABLE_LIVE_TRADING", "true")
        config.execution.dry_run = False
        client = make_client(place_spot_order=AsyncMock(side_effect=BinanceAPIError(-2010, "no funds")))

        result = await TradingEngine(db, client, config).execute(_request(exchange))
        assert not result.success
        assert result.error_category == "INSUFFICIENT_BALANCE"
        assert db.list_positions(exchange.portfolio_id) == []

    @pytest.mark.asyncio
    async def test_live_fill_with_commission(self, db, exchange, config, monkeypatch) -> None:
        monkeypatch.setenv("ENABLE_LIVE_TRADING", "true")
        config.execution.dry_run = False
        client = make_client(place_spot_order=AsyncMock(return_value={
            "orderId": 42, "status": "FILLED", "executedQty": "0.02000000",
            "cummulativeQuoteQty": "1001.00", "transactTime": 1700000000000,
            "fills": [{"price": "50050", "qty": "0.02", "commission": "0.00002",
                       "commissionAsset": "BTC"}],
        }))
        result = await TradingEngine(db, client, config).execute(_request(exchange))
        assert result.order_id == "42"
        assert result.executed_qty == pytest.approx(0.01998)
        assert result.executed_price == pytest.approx(50050)
        client.get_balances.assert_awaited()

    @pytest.mark.asyncio
    async def test_limit_order_stays_pending(self, db, exchange, config, monkeypatch) -> None:
        monkeypatch.setenv("ENABLE_LIVE_TRADING", "true")
        config.execution.dry_run = False
        client = make_client(place_spot_order=AsyncMock(return_value={
            "orderId": 43, "status": "NEW", "executedQty": "0", "cummulativeQuoteQty": "0",
            "price": "48000.00", "fills": [],
        }))
        result = await TradingEngine(db, client, config).execute(
            _request(exchange, order_type="LIMIT", price=48000, stop_loss=2)
        )
        assert result.status == "PENDING"
        position = db.get_position(result.position_id)
        assert position.stop_loss_order_id is None
        params = client.place_spot_order.call_args.kwargs
        assert params["timeInForce"] == "GTC"
        assert params["price"] == "48000.00000000"


class TestPositionManager:
    async def _open(self, db, exchange, client, config, **kw) -> str:
        result = await TradingEngine(db, client, config).execute(_request(exchange, **kw))
        assert result.success
        return result.position_id

    @pytest.mark.asyncio
    async def test_close_long_with_profit(self, db, exchange, bot, config) -> None:
        pid = await self._open(
            db, exchange, make_client(), config, source="SIGNAL_BOT", bot_id=bot.id, stop_loss=2,
        )
        manager = PositionManager(db, config, lambda ex: make_client(price=55000.0))
        result = await manager.close_position(pid)

        assert result.success
        assert result.exit_price == pytest.approx(55000)
        assert result.pnl == pytest.approx(100)
        assert result.pnl_percent == pytest.approx(10)
        position = db.get_position(pid)
        assert position.status == "CLOSED"
        assert position.exit_reason == "MANUAL"
        statuses = {o.type: o.status for o in db.get_orders_for_position(pid)}
        assert statuses["STOP_LOSS"] == "CANCELED"
        assert statuses["EXIT"] == "FILLED"
        assert db.get_bot(bot.id).win_trades == 1

    @pytest.mark.asyncio
    async def test_close_short_with_loss(self, db, exchange, config) -> None:
        pid = await self._open(
            db, exchange, make_client(), config,
            side=None, action="ENTER_SHORT", account_type="MARGIN",
        )
        manager = PositionManager(db, config, lambda ex: make_client(price=51000.0))
        result = await manager.close_position(pid)
        assert result.pnl == pytest.approx(-20)
        assert result.pnl_percent == pytest.approx(-2)

    @pytest.mark.asyncio
    async def test_close_errors(self, db, exchange, config) -> None:
        manager = PositionManager(db, config, lambda ex: make_client())
        assert (await manager.close_position("missing")).error == "Position not found"

        pid = await self._open(db, exchange, make_client(), config)
        await manager.close_position(pid)
        assert (await manager.close_position(pid)).error == "Position is already closed"

    @pytest.mark.asyncio
    async def test_price_lookup_failure_uses_entry_price(self, db, exchange, config) -> None:
        pid = await self._open(db, exchange, make_client(), config)
        failing = make_client(get_ticker_price=AsyncMock(side_effect=BinanceAPIError(-1003, "x")))
        result = await PositionManager(db, config, lambda ex: failing).close_position(pid)
        assert result.success
        assert result.pnl == pytest.approx(0)
        failing.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_close_all(self, db, exchange, config) -> None:
        for _ in range(2):
            await self._open(db, exchange, make_client(), config)
        db.insert_position(PositionRecord(
            portfolio_id=exchange.portfolio_id, symbol="ETHUSDT", side="LONG", status="PENDING",
        ))
        summary = await PositionManager(db, config, lambda ex: make_client()).close_all_positions(
            exchange.portfolio_id
        )
        assert summary.total == 2
        assert summary.success == 2
        assert summary.failed == 0
        assert len(db.list_positions(exchange.portfolio_id, statuses=["OPEN"])) == 0
