"""Price stream: live last-trade prices from the Binance ticker stream.

One websocket per symbol on ``<symbol>@ticker``. Each update's close price
(``c``) is handed to the registered callback.

Reconnects with exponential backoff and gives up after a configured
number of consecutive failures.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Coroutine

import websockets

from signalbot.config import StreamsConfig
from signalbot.observability.logger import get_logger
from signalbot.observability.metrics import metrics

log = get_logger(__name__)

PriceCallback = Callable[[str, float], Coroutine[Any, Any, None]]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before reconnect ``attempt`` (0-based)."""
    return min(base * (2 ** attempt), cap)


class PriceStream:
    """Ticker stream for one symbol with auto-reconnection."""

    def __init__(
        self,
        symbol: str,
        on_price: PriceCallback,
        config: StreamsConfig | None = None,
        ws_base_url: str = "wss://stream.binance.com:9443/ws",
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.symbol = symbol.upper()
        self._on_price = on_price
        self._config = config or StreamsConfig()
        self._url = f"{ws_base_url.rstrip('/')}/{self.symbol.lower()}@ticker"
        self._connect = connect
        self._running = False
        self._attempts = 0
        self._ws: Any = None
        self.last_price: float | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def running(self) -> bool:
        return self._running

    @property
    def attempts(self) -> int:
        return self._attempts

    async def run(self) -> None:
        """Stream until stopped or the reconnect budget is spent."""
        self._running = True
        while self._running:
            try:
                await self._stream()
            except Exception as e:
                if not self._running:
                    break
                log.warning("price_stream.disconnected", symbol=self.symbol, error=str(e))
            if not self._running:
                break

            if self._attempts >= self._config.price_max_reconnect_attempts:
                log.error(
                    "price_stream.gave_up",
                    symbol=self.symbol,
                    attempts=self._attempts,
                )
                self._running = False
                break
            delay = backoff_delay(
                self._attempts,
                self._config.price_backoff_base_secs,
                self._config.price_backoff_max_secs,
            )
            self._attempts += 1
            metrics.incr("streams.reconnects", stream="price")
            log.info(
                "price_stream.reconnecting",
                symbol=self.symbol,
                attempt=self._attempts,
                delay=delay,
            )
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        self._running = False
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                log.debug("price_stream.close_error", symbol=self.symbol, error=str(e))
            self._ws = None

    async def _stream(self) -> None:
        async with self._connect(self._url) as ws:
            self._ws = ws
            self._attempts = 0
            log.info("price_stream.connected", symbol=self.symbol)
            async for raw_msg in ws:
                if not self._running:
                    break
                await self._handle_message(raw_msg)
        self._ws = None

    async def _handle_message(self, raw_msg: str | bytes) -> None:
        try:
            msg = json.loads(raw_msg)
            price = float(msg["c"])
        except (ValueError, KeyError, TypeError) as e:
            log.debug("price_stream.parse_error", symbol=self.symbol, error=str(e))
            return
        self.last_price = price
        try:
            await self._on_price(self.symbol, price)
        except Exception as e:
            log.error("price_stream.callback_error", symbol=self.symbol, error=str(e))
