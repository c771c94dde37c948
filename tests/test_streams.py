"""Tests for price/user-data streams and the SL/TP monitors built on them."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from signalbot.config import StreamsConfig
from signalbot.connectors.binance_client import BinanceAPIError
from signalbot.connectors.price_stream import PriceStream, backoff_delay
from signalbot.connectors.user_stream import UserDataStreamManager
from signalbot.engine.execution_monitor import handle_execution_report
from signalbot.engine.position_manager import ClosePositionResult, PositionManager
from signalbot.engine.tp_sl_monitor import MonitoredPosition, PositionCloser, TpSlMonitor
from signalbot.engine.trading_engine import TradingEngine
from signalbot.execution.order_builder import TradeRequest
from signalbot.observability.metrics import metrics
from signalbot.storage.models import PositionRecord

from conftest import make_client


class FakeSocket:
    """Async-context websocket that replays messages, then optionally hangs."""

    def __init__(self, messages: list[str], hang: bool = False):
        self.messages = messages
        self.hang = hang
        self.closed = False

    async def __aenter__(self) -> FakeSocket:
        return self

    async def __aexit__(self, *exc) -> bool:
        return False

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self.messages:
            yield message
        if self.hang:
            await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


def _report(order_id: str, status: str = "FILLED", **extra) -> dict:
    event = {
        "e": "executionReport", "X": status, "i": order_id, "s": "BTCUSDT",
        "S": "SELL", "o": "LIMIT", "c": "client-1", "T": 1700000000000,
    }
    event.update(extra)
    return event


async def _open_position(db, exchange, config, **kw) -> PositionRecord:
    request = TradeRequest(
        portfolio_id=exchange.portfolio_id, exchange=exchange,
        symbol="BTCUSDT", side="BUY", quantity=0.02, **kw,
    )
    result = await TradingEngine(db, make_client(), config).execute(request)
    assert result.success, result.errors
    position = db.get_position(result.position_id)
    assert position is not None
    return position


# ── Price stream ─────────────────────────────────────────────────────

class TestPriceStream:
    def test_backoff(self) -> None:
        assert backoff_delay(0, 1.0, 30.0) == 1.0
        assert backoff_delay(3, 1.0, 30.0) == 8.0
        assert backoff_delay(10, 1.0, 30.0) == 30.0

    @pytest.mark.asyncio
    async def test_prices_delivered(self) -> None:
        seen: list[tuple[str, float]] = []

        async def on_price(symbol: str, price: float) -> None:
            seen.append((symbol, price))

        urls: list[str] = []

        def connect(url: str) -> FakeSocket:
            urls.append(url)
            return FakeSocket([json.dumps({"c": "50100.5"}), "not json", json.dumps({"x": 1})])

        stream = PriceStream(
            "btcusdt", on_price,
            config=StreamsConfig(price_max_reconnect_attempts=0),
            ws_base_url="wss://stream.test/ws/",
            connect=connect,
        )
        await stream.run()

        assert urls == ["wss://stream.test/ws/btcusdt@ticker"]
        assert seen == [("BTCUSDT", 50100.5)]
        assert stream.last_price == 50100.5
        assert not stream.running

    @pytest.mark.asyncio
    async def test_gives_up_after_reconnect_budget(self) -> None:
        def connect(url: str) -> FakeSocket:
            raise OSError("connection refused")

        stream = PriceStream(
            "ETHUSDT", AsyncMock(),
            config=StreamsConfig(
                price_max_reconnect_attempts=2, price_backoff_base_secs=0.0,
            ),
            connect=connect,
        )
        await stream.run()
        assert stream.attempts == 2
        assert metrics.counter("streams.reconnects") == 2

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_stream(self) -> None:
        on_price = AsyncMock(side_effect=RuntimeError("boom"))
        stream = PriceStream(
            "BTCUSDT", on_price,
            config=StreamsConfig(price_max_reconnect_attempts=0),
            connect=lambda url: FakeSocket([json.dumps({"c": "1"}), json.dumps({"c": "2"})]),
        )
        await stream.run()
        assert on_price.await_count == 2
        assert stream.last_price == 2.0


# ── User-data stream ─────────────────────────────────────────────────

class TestUserDataStream:
    @pytest.mark.asyncio
    async def test_routes_execution_reports(self, db, exchange, config) -> None:
        config.streams.user_stream_reconnect_secs = 60.0
        client = make_client()
        received: list[dict] = []
        messages = [
            json.dumps({"e": "outboundAccountPosition"}),
            json.dumps(_report("1")),
            "{broken",
        ]
        manager = UserDataStreamManager(
            db, config,
            client_factory=lambda ex: client,
            connect=lambda url: FakeSocket(messages),
            on_event=lambda _db, event: received.append(event),
        )

        assert await manager.start_stream("user-1", exchange)
        session = manager.session("user-1")
        await session.task

        assert session.events == 1
        assert received[0]["i"] == "1"
        # the socket ended, so the session is gone and a reconnect is pending
        assert manager.active_sessions() == []
        client.close.assert_awaited()
        await manager.stop_all()

    @pytest.mark.asyncio
    async def test_stop_stream_releases_listen_key(self, db, exchange, config) -> None:
        client = make_client()
        socket = FakeSocket([], hang=True)
        manager = UserDataStreamManager(
            db, config, client_factory=lambda ex: client, connect=lambda url: socket,
        )
        assert await manager.start_stream("user-1", exchange)
        assert not await manager.start_stream("user-1", exchange)
        await asyncio.sleep(0)
        assert manager.session("user-1").connected

        await manager.stop_stream("user-1")
        await asyncio.sleep(0)
        assert socket.closed
        client.close_listen_key.assert_awaited_with("listen-key-1")
        assert manager.active_sessions() == []

    @pytest.mark.asyncio
    async def test_listen_key_failure(self, db, exchange, config) -> None:
        client = make_client(create_listen_key=AsyncMock(side_effect=BinanceAPIError(-2015, "x")))
        manager = UserDataStreamManager(db, config, client_factory=lambda ex: client)
        assert not await manager.start_stream("user-1", exchange)
        client.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_initialize_for_protected_positions(self, db, portfolio, exchange, config) -> None:
        db.insert_position(PositionRecord(
            portfolio_id=portfolio.id, symbol="BTCUSDT", side="LONG",
            status="OPEN", stop_loss_order_id="77",
        ))
        manager = UserDataStreamManager(
            db, config,
            client_factory=lambda ex: make_client(),
            connect=lambda url: FakeSocket([], hang=True),
        )
        assert await manager.initialize_all_active_streams() == 1
        assert manager.active_sessions() == ["user-1"]
        await manager.stop_all()
        assert manager.active_sessions() == []


# ── Execution monitor ────────────────────────────────────────────────

class TestExecutionMonitor:
    def test_ignores_unfilled_and_unknown_orders(self, db) -> None:
        assert handle_execution_report(db, _report("1", status="NEW")).reason == "not_filled"
        assert handle_execution_report(db, _report("404")).reason == "no_matching_position"

    @pytest.mark.asyncio
    async def test_take_profit_fill_closes_position(self, db, exchange, bot, config) -> None:
        position = await _open_position(
            db, exchange, config, stop_loss=2, take_profit=4, source="SIGNAL_BOT", bot_id=bot.id,
        )
        result = handle_execution_report(db, _report(
            position.take_profit_order_id, L="52000", z="0.02", Z="1040",
        ))

        assert result.handled
        assert result.exit_reason == "TAKE_PROFIT"
        assert result.pnl == pytest.approx(40)
        closed = db.get_position(position.id)
        assert closed.status == "CLOSED"
        assert closed.pnl_percent == pytest.approx(4)
        assert closed.closed_at.startswith("2023-11-14")
        statuses = {o.type: o.status for o in db.get_orders_for_position(position.id)}
        assert statuses["TAKE_PROFIT"] == "FILLED"
        assert statuses["STOP_LOSS"] == "CANCELED"
        assert statuses["EXIT"] == "FILLED"
        assert db.get_bot(bot.id).win_trades == 1

    @pytest.mark.asyncio
    async def test_stop_loss_fill(self, db, exchange, config) -> None:
        position = await _open_position(db, exchange, config, stop_loss=2)
        result = handle_execution_report(db, _report(
            position.stop_loss_order_id, L="49000", z="0.02", Z="980",
        ))
        assert result.exit_reason == "STOP_LOSS"
        assert result.pnl == pytest.approx(-20)


# ── SL/TP monitor ────────────────────────────────────────────────────

class TestMonitoredPosition:
    def test_long_triggers(self) -> None:
        pos = MonitoredPosition("p", "BTCUSDT", "LONG", stop_loss=49000, take_profit=52000)
        assert pos.trigger(48999) == "STOP_LOSS"
        assert pos.trigger(52000) == "TAKE_PROFIT"
        assert pos.trigger(50000) is None

    def test_short_triggers(self) -> None:
        pos = MonitoredPosition("p", "BTCUSDT", "SHORT", stop_loss=51000, take_profit=48000)
        assert pos.trigger(51000) == "STOP_LOSS"
        assert pos.trigger(47000) == "TAKE_PROFIT"
        assert pos.trigger(50000) is None


class TestTpSlMonitor:
    @pytest.mark.asyncio
    async def test_stop_loss_crossing_closes_position(self, db, exchange, config) -> None:
        position = await _open_position(db, exchange, config, stop_loss=2)
        manager = PositionManager(db, config, lambda ex: make_client(price=48900.0))
        closer = PositionCloser(db, manager, auto_process=False)
        monitor = TpSlMonitor(db, config, manager=manager, closer=closer)

        assert monitor.load_open_positions() == 1
        assert monitor.check_price("BTCUSDT", 49500) == []
        assert monitor.check_price("BTCUSDT", 48900) == [position.id]
        assert monitor.check_price("BTCUSDT", 48800) == []
        assert "Stop Loss triggered" in db.get_position(position.id).warning_message

        await closer.process_queue()
        closed = db.get_position(position.id)
        assert closed.status == "CLOSED"
        assert closed.exit_reason == "STOP_LOSS"
        assert monitor.monitored() == []
        assert metrics.counter("tp_sl.closed") == 1

    def test_positions_without_levels_are_ignored(self, db, config) -> None:
        monitor = TpSlMonitor(db, config, manager=MagicMock())
        assert not monitor.add_position(MonitoredPosition("p", "BTCUSDT", "LONG"))

    @pytest.mark.asyncio
    async def test_stream_per_symbol(self, db, config) -> None:
        streams: dict[str, MagicMock] = {}

        def factory(symbol: str) -> MagicMock:
            streams[symbol] = MagicMock(run=AsyncMock(), stop=AsyncMock())
            return streams[symbol]

        monitor = TpSlMonitor(db, config, manager=MagicMock(), stream_factory=factory)
        monitor.add_position(MonitoredPosition("a", "BTCUSDT", "LONG", stop_loss=1.0))
        monitor.add_position(MonitoredPosition("b", "BTCUSDT", "SHORT", take_profit=1.0))
        await monitor.start()
        monitor.add_position(MonitoredPosition("c", "ETHUSDT", "LONG", take_profit=5.0))
        assert sorted(streams) == ["BTCUSDT", "ETHUSDT"]
        assert monitor.stats()["streams"] == 2

        monitor.remove_position("c")
        await asyncio.sleep(0)
        streams["ETHUSDT"].stop.assert_awaited()
        assert monitor.stats()["symbols"] == ["BTCUSDT"]

        await monitor.stop()
        streams["BTCUSDT"].stop.assert_awaited()


class TestPositionCloser:
    @pytest.mark.asyncio
    async def test_retries_then_gives_up(self, db, portfolio) -> None:
        pid = db.insert_position(PositionRecord(
            portfolio_id=portfolio.id, symbol="BTCUSDT", side="LONG", status="OPEN",
        ))
        manager = MagicMock()
        manager.close_position = AsyncMock(return_value=ClosePositionResult(
            False, pid, error="Account has insufficient balance",
        ))
        released: list[str] = []
        closer = PositionCloser(db, manager, max_retries=2, delay_secs=0, auto_process=False)
        closer.set_closed_callback(released.append)

        closer.queue_close(pid, "STOP_LOSS")
        assert not closer.queue_close(pid, "STOP_LOSS")
        await closer.process_queue()
        assert db.get_position(pid).warning_message == (
            "Stop Loss auto-close retry 1/2: Insufficient balance"
        )
        assert released == []

        closer.queue_close(pid, "STOP_LOSS")
        await closer.process_queue()
        assert db.get_position(pid).warning_message.startswith(
            "Stop Loss auto-close failed after 2 attempts. Please close manually."
        )
        assert released == [pid]
        manager.close_position.assert_awaited_with(pid, exit_reason="STOP_LOSS")
        assert closer.status()["queue_size"] == 0
