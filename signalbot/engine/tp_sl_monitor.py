"""TP/SL monitor: client-side take-profit and stop-loss enforcement.

Watches live ticker prices for symbols with OPEN positions that carry
SL or TP price levels. When a level is crossed, the position is queued
to the closer, which closes it through the position manager.

Trigger rules:
  LONG:  price <= stop loss  or  price >= take profit
  SHORT: price >= stop loss  or  price <= take profit
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

from signalbot.config import AppConfig
from signalbot.connectors.price_stream import PriceStream
from signalbot.engine.position_manager import PositionManager
from signalbot.observability.logger import get_logger
from signalbot.observability.metrics import metrics
from signalbot.storage.database import Database
from signalbot.storage.models import PositionRecord

log = get_logger(__name__)

_REASON_LABELS = {"TAKE_PROFIT": "Take Profit", "STOP_LOSS": "Stop Loss"}


@dataclass
class MonitoredPosition:
    id: str
    symbol: str
    side: str
    stop_loss: float | None = None
    take_profit: float | None = None

    @classmethod
    def from_record(cls, position: PositionRecord) -> MonitoredPosition:
        return cls(
            id=position.id,
            symbol=position.symbol,
            side=position.side,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
        )

    def trigger(self, price: float) -> str | None:
        """TAKE_PROFIT, STOP_LOSS, or None for the given price."""
        if self.side == "LONG":
            if self.stop_loss and price <= self.stop_loss:
                return "STOP_LOSS"
            if self.take_profit and price >= self.take_profit:
                return "TAKE_PROFIT"
        else:
            if self.stop_loss and price >= self.stop_loss:
                return "STOP_LOSS"
            if self.take_profit and price <= self.take_profit:
                return "TAKE_PROFIT"
        return None


def _simple_error(message: str) -> str:
    lowered = message.lower()
    if "insufficient" in lowered:
        return "Insufficient balance"
    if "lot_size" in lowered:
        return "Invalid quantity format"
    if "notional" in lowered:
        return "Order value too small"
    if "network" in lowered or "timeout" in lowered:
        return "Network error"
    return message if len(message) <= 50 else message[:50] + "..."


class PositionCloser:
    """Queue of triggered positions, closed one at a time with retries."""

    def __init__(
        self,
        db: Database,
        manager: PositionManager,
        max_retries: int = 3,
        delay_secs: float = 0.1,
        auto_process: bool = True,
    ):
        self._db = db
        self._manager = manager
        self._max_retries = max_retries
        self._delay = delay_secs
        self._auto_process = auto_process
        self._queue: dict[str, str] = {}
        self._retries: dict[str, int] = {}
        self._processing = False
        self._task: asyncio.Task | None = None
        self._on_closed: Callable[[str], None] | None = None

    def set_closed_callback(self, callback: Callable[[str], None]) -> None:
        """Called with a position id once it should leave monitoring."""
        self._on_closed = callback

    def is_queued(self, position_id: str) -> bool:
        return position_id in self._queue

    def queue_close(self, position_id: str, reason: str) -> bool:
        if position_id in self._queue:
            return False
        self._queue[position_id] = reason
        self._db.update_position(
            position_id,
            warning_message=f"{_REASON_LABELS[reason]} triggered - closing position...",
        )
        log.info("position_closer.queued", position_id=position_id, reason=reason)
        if self._auto_process and not self._processing:
            self._task = asyncio.create_task(self.process_queue())
        return True

    async def process_queue(self) -> None:
        self._processing = True
        try:
            while self._queue:
                position_id = next(iter(self._queue))
                reason = self._queue.pop(position_id)
                await self._close(position_id, reason)
                if self._queue:
                    await asyncio.sleep(self._delay)
        finally:
            self._processing = False

    async def _close(self, position_id: str, reason: str) -> None:
        try:
            result = await self._manager.close_position(position_id, exit_reason=reason)
            error = None if result.success else (result.error or "Failed to close position")
        except Exception as e:
            error = str(e)

        if error is None:
            self._retries.pop(position_id, None)
            metrics.incr("tp_sl.closed", reason=reason)
            log.info("position_closer.closed", position_id=position_id, reason=reason)
            self._notify_closed(position_id)
            return

        retries = self._retries.get(position_id, 0) + 1
        self._retries[position_id] = retries
        label = _REASON_LABELS[reason]
        simple = _simple_error(error)
        log.warning(
            "position_closer.failed",
            position_id=position_id,
            reason=reason,
            attempt=retries,
            max_retries=self._max_retries,
            error=error,
        )
        if retries >= self._max_retries:
            self._retries.pop(position_id, None)
            message = (
                f"{label} auto-close failed after {self._max_retries} attempts. "
                f"Please close manually. Error: {simple}"
            )
            self._notify_closed(position_id)
        else:
            message = f"{label} auto-close retry {retries}/{self._max_retries}: {simple}"
        self._db.update_position(position_id, warning_message=message)

    def _notify_closed(self, position_id: str) -> None:
        if self._on_closed is not None:
            self._on_closed(position_id)

    def status(self) -> dict[str, Any]:
        return {
            "queue_size": len(self._queue),
            "processing": self._processing,
            "pending_positions": list(self._queue),
        }


class TpSlMonitor:
    """Price-driven SL/TP watcher over one ticker stream per symbol."""

    def __init__(
        self,
        db: Database,
        config: AppConfig,
        manager: PositionManager | None = None,
        closer: PositionCloser | None = None,
        stream_factory: Callable[..., PriceStream] | None = None,
    ):
        self._db = db
        self._config = config
        manager = manager or PositionManager(db, config)
        self._closer = closer or PositionCloser(
            db,
            manager,
            max_retries=config.monitor.max_close_retries,
            delay_secs=config.trading.close_all_delay_ms / 1000,
        )
        self._closer.set_closed_callback(self.remove_position)
        self._stream_factory = stream_factory or self._default_stream
        self._positions: dict[str, MonitoredPosition] = {}
        self._symbols: dict[str, set[str]] = {}
        self._streams: dict[str, PriceStream] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._running = False
        self.last_prices: dict[str, float] = {}

    @property
    def closer(self) -> PositionCloser:
        return self._closer

    def _default_stream(self, symbol: str) -> PriceStream:
        return PriceStream(
            symbol,
            self.on_price,
            config=self._config.streams,
            ws_base_url=self._config.binance.ws_base_url,
        )

    def monitored(self) -> list[MonitoredPosition]:
        return list(self._positions.values())

    def add_position(self, position: MonitoredPosition) -> bool:
        if not position.stop_loss and not position.take_profit:
            return False
        self._positions[position.id] = position
        ids = self._symbols.setdefault(position.symbol, set())
        ids.add(position.id)
        if self._running and position.symbol not in self._streams:
            self._subscribe(position.symbol)
        log.info(
            "tp_sl_monitor.added",
            position_id=position.id,
            symbol=position.symbol,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
        )
        return True

    def remove_position(self, position_id: str) -> None:
        position = self._positions.pop(position_id, None)
        if position is None:
            return
        ids = self._symbols.get(position.symbol)
        if ids is not None:
            ids.discard(position_id)
            if not ids:
                del self._symbols[position.symbol]
                self._unsubscribe(position.symbol)
        log.info("tp_sl_monitor.removed", position_id=position_id)

    def load_open_positions(self) -> int:
        count = 0
        for record in self._db.monitorable_positions():
            if self.add_position(MonitoredPosition.from_record(record)):
                count += 1
        log.info("tp_sl_monitor.loaded", positions=count)
        return count

    def check_price(self, symbol: str, price: float) -> list[str]:
        """Queue every position on the symbol whose level was crossed."""
        self.last_prices[symbol] = price
        triggered: list[str] = []
        for position_id in list(self._symbols.get(symbol, ())):
            position = self._positions[position_id]
            reason = position.trigger(price)
            if reason is None or self._closer.is_queued(position_id):
                continue
            log.info(
                "tp_sl_monitor.triggered",
                position_id=position_id,
                symbol=symbol,
                price=price,
                reason=reason,
            )
            if self._closer.queue_close(position_id, reason):
                triggered.append(position_id)
        return triggered

    async def on_price(self, symbol: str, price: float) -> None:
        self.check_price(symbol, price)

    # ── Stream lifecycle ─────────────────────────────────────────────

    def _subscribe(self, symbol: str) -> None:
        stream = self._stream_factory(symbol)
        self._streams[symbol] = stream
        self._tasks[symbol] = asyncio.create_task(stream.run())

    def _unsubscribe(self, symbol: str) -> None:
        stream = self._streams.pop(symbol, None)
        task = self._tasks.pop(symbol, None)
        if stream is not None:
            asyncio.ensure_future(stream.stop())
        if task is not None:
            task.cancel()

    async def start(self) -> None:
        self._running = True
        for symbol in list(self._symbols):
            if symbol not in self._streams:
                self._subscribe(symbol)
        metrics.gauge("tp_sl.monitored_positions", len(self._positions))
        log.info("tp_sl_monitor.started", symbols=len(self._streams))

    async def stop(self) -> None:
        self._running = False
        for symbol in list(self._streams):
            stream = self._streams.pop(symbol)
            await stream.stop()
            task = self._tasks.pop(symbol, None)
            if task is not None:
                task.cancel()
        log.info("tp_sl_monitor.stopped")

    def stats(self) -> dict[str, Any]:
        return {
            "positions": len(self._positions),
            "symbols": sorted(self._symbols),
            "streams": len(self._streams),
            "closer": self._closer.status(),
        }
