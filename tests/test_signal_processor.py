"""Tests for signal guards, the signal processor and bulk signal intake."""

from __future__ import annotations

import datetime as dt
from unittest.mock import AsyncMock

import pytest

from signalbot.config import ValidatorConfig
from signalbot.connectors.binance_client import BinanceAPIError
from signalbot.observability.metrics import metrics
from signalbot.signals.processor import SignalProcessor, create_bulk_signals
from signalbot.signals.validator import SignalValidator, start_of_day
from signalbot.storage.models import PositionRecord, SignalRecord

from conftest import make_client


def _signal(db, bot, action: str = "ENTER_LONG", symbol: str = "BTCUSDT", price: float | None = 50000.0) -> str:
    return db.insert_signal(SignalRecord(bot_id=bot.id, action=action, symbol=symbol, price=price))


class TestSignalValidator:
    def test_start_of_day(self) -> None:
        now = dt.datetime(2024, 5, 2, 13, 45, tzinfo=dt.timezone.utc)
        assert start_of_day(now) == dt.datetime(2024, 5, 2, tzinfo=dt.timezone.utc)

    def test_daily_trade_limit(self, db, bot) -> None:
        db.update_bot(bot.id, max_daily_trades=1)
        db.insert_position(PositionRecord(
            portfolio_id=bot.portfolio_id, bot_id=bot.id, symbol="BTCUSDT", side="LONG",
        ))
        guard = SignalValidator(db).check_daily_limits(db.get_bot(bot.id))
        assert not guard.allowed
        assert "Daily trade limit reached (1/1)" in guard.reason

    def test_daily_loss_limit(self, db, bot) -> None:
        db.insert_position(PositionRecord(
            portfolio_id=bot.portfolio_id, bot_id=bot.id, symbol="BTCUSDT", side="LONG",
            status="CLOSED", pnl=-150.0, closed_at=dt.datetime.now(dt.timezone.utc).isoformat(),
        ))
        validator = SignalValidator(db, ValidatorConfig(daily_loss_limit=-100.0))
        guard = validator.check_daily_limits(bot)
        assert not guard.allowed
        assert guard.violations[0].startswith("Daily loss limit reached")

    def test_min_portfolio_value(self, db) -> None:
        validator = SignalValidator(db, ValidatorConfig(min_portfolio_value=100.0))
        assert validator.check_portfolio_value(99.0) is not None
        assert validator.check_portfolio_value(100.0) is None


class TestSignalProcessor:
    @pytest.mark.asyncio
    async def test_enter_then_exit(self, db, bot, config) -> None:
        processor = SignalProcessor(db, config, lambda ex: make_client())
        entry_id = _signal(db, bot)

        entry = await processor.process(entry_id)
        assert entry.success, entry.error
        position = db.get_position(entry.position_id)
        assert position.status == "OPEN"
        assert position.source == "SIGNAL_BOT"
        assert position.quantity == pytest.approx(0.02)
        stored_bot = db.get_bot(bot.id)
        assert stored_bot.total_trades == 1
        assert stored_bot.total_volume == pytest.approx(1000)
        signal = db.get_signal(entry_id)
        assert signal.processed and signal.position_id == position.id and signal.error is None

        processor = SignalProcessor(db, config, lambda ex: make_client(price=52000.0))
        exit_result = await processor.process(_signal(db, bot, "EXIT_LONG", price=52000.0))
        assert exit_result.success
        assert exit_result.position_id == position.id
        closed = db.get_position(position.id)
        assert closed.status == "CLOSED"
        assert closed.exit_reason == "SIGNAL"
        assert closed.pnl == pytest.approx(40)
        stored_bot = db.get_bot(bot.id)
        assert stored_bot.total_trades == 1
        assert stored_bot.win_trades == 1
        assert metrics.counter("signals.processed") == 2

    @pytest.mark.asyncio
    async def test_duplicate_entry_skipped(self, db, bot, config) -> None:
        processor = SignalProcessor(db, config, lambda ex: make_client())
        await processor.process(_signal(db, bot))
        result = await processor.process(_signal(db, bot))
        assert result.skipped
        assert result.skip_reason == "LONG position already open for BTCUSDT"
        assert metrics.counter("signals.skipped") == 1

    @pytest.mark.asyncio
    async def test_exit_without_position_skipped(self, db, bot, config) -> None:
        processor = SignalProcessor(db, config, lambda ex: make_client())
        sid = _signal(db, bot, "EXIT_SHORT")
        result = await processor.process(sid)
        assert result.skipped
        assert db.get_signal(sid).error == "No open SHORT position for BTCUSDT"

    @pytest.mark.asyncio
    async def test_max_open_positions(self, db, bot, config) -> None:
        db.update_bot(bot.id, max_open_positions=1)
        processor = SignalProcessor(db, config, lambda ex: make_client())
        await processor.process(_signal(db, bot))
        result = await processor.process(_signal(db, bot, symbol="ETHUSDT", price=3000.0))
        assert result.skipped
        assert "Max open positions reached" in result.skip_reason

    @pytest.mark.asyncio
    async def test_inactive_bot_skipped(self, db, bot, config) -> None:
        db.update_bot(bot.id, is_active=False)
        result = await SignalProcessor(db, config, lambda ex: make_client()).process(_signal(db, bot))
        assert result.skipped
        assert result.skip_reason == "Bot is inactive"

    @pytest.mark.asyncio
    async def test_already_processed(self, db, bot, config) -> None:
        processor = SignalProcessor(db, config, lambda ex: make_client())
        sid = _signal(db, bot, "EXIT_LONG")
        await processor.process(sid)
        result = await processor.process(sid)
        assert result.skip_reason == "Signal already processed"

    @pytest.mark.asyncio
    async def test_price_fetched_when_missing(self, db, bot, config) -> None:
        client = make_client(price=40000.0)
        result = await SignalProcessor(db, config, lambda ex: client).process(
            _signal(db, bot, price=None)
        )
        assert result.success
        assert db.get_position(result.position_id).quantity == pytest.approx(0.025)

    @pytest.mark.asyncio
    async def test_no_price_available(self, db, bot, config) -> None:
        client = make_client(get_ticker_price=AsyncMock(side_effect=BinanceAPIError(-1121, "bad")))
        result = await SignalProcessor(db, config, lambda ex: client).process(
            _signal(db, bot, price=None)
        )
        assert not result.success
        assert result.error == "Unable to determine price for BTCUSDT"
        client.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_unsynced_exchange_fails(self, db, bot, exchange, config) -> None:
        db.update_exchange(exchange.id, total_value=0.0)
        result = await SignalProcessor(db, config, lambda ex: make_client()).process(_signal(db, bot))
        assert not result.success
        assert "sync your exchange" in result.error
        assert metrics.counter("signals.failed") == 1

    @pytest.mark.asyncio
    async def test_below_min_portfolio_value(self, db, bot, exchange, config) -> None:
        db.update_exchange(exchange.id, total_value=50.0)
        result = await SignalProcessor(db, config, lambda ex: make_client()).process(_signal(db, bot))
        assert "below minimum" in result.error

    @pytest.mark.asyncio
    async def test_bot_stop_loss_places_protection(self, db, bot, config) -> None:
        db.update_bot(bot.id, use_stop_loss=True, stop_loss=3.0)
        result = await SignalProcessor(db, config, lambda ex: make_client()).process(_signal(db, bot))
        position = db.get_position(result.position_id)
        assert position.stop_loss == pytest.approx(48500)
        assert position.stop_loss_order_id is not None


class TestBulkSignals:
    def test_mixed_rows(self, db, bot) -> None:
        summary = create_bulk_signals(db, [
            {"botId": bot.id, "action": "buy", "symbol": "btcusdt", "price": "50000"},
            {"botId": bot.id, "action": "moon", "symbol": "BTCUSDT"},
            {"botId": "missing", "action": "buy", "symbol": "BTCUSDT"},
            {"botId": bot.id, "action": "sell", "symbol": ""},
        ])
        assert summary["created"] == 1
        assert summary["failed"] == 3
        assert [e["row"] for e in summary["errors"]] == [1, 2, 3]
        stored = db.list_signals(bot_id=bot.id)
        assert stored[0].action == "ENTER_LONG"
        assert stored[0].symbol == "BTCUSDT"
        assert stored[0].processed is False
