"""User-data stream manager: Binance order updates per user.

One session per user:
  - A listen key is created over REST and kept alive on a timer
  - The websocket at ``<ws_base_url>/<listenKey>`` delivers account events
  - ``executionReport`` events are routed to the execution monitor
  - A dropped connection is retried after a fixed delay unless the
    user's stream was stopped or the manager shut down
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
import websockets

from signalbot.config import AppConfig
from signalbot.connectors.binance_client import BinanceAPIError, BinanceClient, client_for_exchange
from signalbot.engine.execution_monitor import handle_execution_report
from signalbot.observability.logger import get_logger
from signalbot.observability.metrics import metrics
from signalbot.storage.database import Database
from signalbot.storage.models import ExchangeRecord

log = get_logger(__name__)

EventHandler = Callable[[Database, dict[str, Any]], Any]


@dataclass
class StreamSession:
    user_id: str
    exchange: ExchangeRecord
    client: BinanceClient
    listen_key: str
    ws: Any = None
    task: asyncio.Task | None = None
    keepalive_task: asyncio.Task | None = None
    connected: bool = False
    events: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "exchange_id": self.exchange.id,
            "connected": self.connected,
            "events": self.events,
        }


class UserDataStreamManager:
    """Own the user-data websocket sessions for all users."""

    def __init__(
        self,
        db: Database,
        config: AppConfig,
        client_factory: Callable[[ExchangeRecord], BinanceClient] | None = None,
        connect: Callable[..., Any] = websockets.connect,
        on_event: EventHandler = handle_execution_report,
    ):
        self._db = db
        self._config = config
        self._client_factory = client_factory or (
            lambda exchange: client_for_exchange(exchange, config.binance)
        )
        self._connect = connect
        self._on_event = on_event
        self._sessions: dict[str, StreamSession] = {}
        self._stopped: set[str] = set()
        self._reconnects: set[asyncio.Task] = set()
        self._running = True

    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    def session(self, user_id: str) -> StreamSession | None:
        return self._sessions.get(user_id)

    async def start_stream(self, user_id: str, exchange: ExchangeRecord) -> bool:
        """Open a stream for the user. Returns False if one already exists."""
        if user_id in self._sessions:
            log.info("user_stream.already_running", user_id=user_id)
            return False
        self._running = True
        self._stopped.discard(user_id)

        client = self._client_factory(exchange)
        try:
            listen_key = await client.create_listen_key()
        except (BinanceAPIError, httpx.HTTPError) as e:
            log.error("user_stream.listen_key_failed", user_id=user_id, error=str(e))
            await client.close()
            return False

        session = StreamSession(
            user_id=user_id, exchange=exchange, client=client, listen_key=listen_key,
        )
        self._sessions[user_id] = session
        session.keepalive_task = asyncio.create_task(self._keepalive(session))
        session.task = asyncio.create_task(self._run(session))
        log.info("user_stream.started", user_id=user_id, exchange_id=exchange.id)
        return True

    async def stop_stream(self, user_id: str) -> None:
        self._stopped.add(user_id)
        session = self._sessions.pop(user_id, None)
        if session is None:
            return
        current = asyncio.current_task()
        for task in (session.keepalive_task, session.task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if session.ws is not None:
            try:
                await session.ws.close()
            except Exception as e:
                log.debug("user_stream.ws_close_error", user_id=user_id, error=str(e))
        try:
            await session.client.close_listen_key(session.listen_key)
        except (BinanceAPIError, httpx.HTTPError) as e:
            log.warning("user_stream.listen_key_close_failed", user_id=user_id, error=str(e))
        await session.client.close()
        log.info("user_stream.stopped", user_id=user_id)

    async def stop_all(self) -> None:
        self._running = False
        for task in list(self._reconnects):
            task.cancel()
        for user_id in list(self._sessions):
            await self.stop_stream(user_id)

    async def initialize_all_active_streams(self) -> int:
        """Start streams for users with exchange-protected OPEN positions."""
        started = 0
        portfolio_ids = sorted({p.portfolio_id for p in self._db.protected_positions()})
        for portfolio_id in portfolio_ids:
            portfolio = self._db.get_portfolio(portfolio_id)
            exchange = self._db.get_active_exchange(portfolio_id)
            if portfolio is None or exchange is None:
                continue
            if not (exchange.api_key and exchange.api_secret):
                continue
            if await self.start_stream(portfolio.user_id, exchange):
                started += 1
        log.info("user_stream.initialized", portfolios=len(portfolio_ids), started=started)
        return started

    # ── Internals ────────────────────────────────────────────────────

    async def _keepalive(self, session: StreamSession) -> None:
        interval = self._config.streams.listen_key_renew_secs
        while True:
            await asyncio.sleep(interval)
            try:
                await session.client.keepalive_listen_key(session.listen_key)
                log.debug("user_stream.listen_key_renewed", user_id=session.user_id)
            except (BinanceAPIError, httpx.HTTPError) as e:
                log.error("user_stream.listen_key_renew_failed", user_id=session.user_id, error=str(e))

    async def _run(self, session: StreamSession) -> None:
        url = f"{self._config.binance.ws_base_url.rstrip('/')}/{session.listen_key}"
        try:
            async with self._connect(url) as ws:
                session.ws = ws
                session.connected = True
                log.info("user_stream.connected", user_id=session.user_id)
                async for raw_msg in ws:
                    await self._handle_message(session, raw_msg)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("user_stream.error", user_id=session.user_id, error=str(e))

        session.connected = False
        log.info("user_stream.closed", user_id=session.user_id)
        if self._sessions.get(session.user_id) is session:
            del self._sessions[session.user_id]
            if session.keepalive_task is not None:
                session.keepalive_task.cancel()
            await session.client.close()
        if self._running and session.user_id not in self._stopped:
            task = asyncio.create_task(self._reconnect(session.user_id, session.exchange))
            self._reconnects.add(task)
            task.add_done_callback(self._reconnects.discard)

    async def _reconnect(self, user_id: str, exchange: ExchangeRecord) -> None:
        await asyncio.sleep(self._config.streams.user_stream_reconnect_secs)
        if not self._running or user_id in self._stopped:
            return
        metrics.incr("streams.reconnects", stream="user_data")
        log.info("user_stream.reconnecting", user_id=user_id)
        await self.start_stream(user_id, exchange)

    async def _handle_message(self, session: StreamSession, raw_msg: str | bytes) -> None:
        try:
            event = json.loads(raw_msg)
        except ValueError as e:
            log.debug("user_stream.parse_error", user_id=session.user_id, error=str(e))
            return
        if not isinstance(event, dict) or event.get("e") != "executionReport":
            return
        session.events += 1
        try:
            result = self._on_event(self._db, event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            log.error(
                "user_stream.handler_error",
                user_id=session.user_id,
                order_id=event.get("i"),
                error=str(e),
            )
