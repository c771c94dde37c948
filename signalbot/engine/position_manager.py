"""Position manager: closes open positions on the exchange.

Close flow:
  1. Cancel outstanding exchange-side SL/TP orders
  2. Market order on the opposite side for the full quantity
  3. Value-based P&L from the exit order's quote amount
  4. Close the position, record the EXIT order, fold into bot counters
  5. Recalculate portfolio statistics
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable

from signalbot.analytics.pnl import value_pnl
from signalbot.analytics.portfolio_stats import safe_recalculate
from signalbot.config import AppConfig
from signalbot.connectors.binance_client import BinanceAPIError, BinanceClient, client_for_exchange
from signalbot.execution.fill_tracker import record_exit_order, summarize_fill
from signalbot.execution.order_builder import build_close_order
from signalbot.execution.order_router import OrderRouter
from signalbot.execution.protective_orders import cancel_protective_orders
from signalbot.observability.logger import get_logger
from signalbot.observability.metrics import metrics
from signalbot.storage.database import Database
from signalbot.storage.models import ExchangeRecord, utc_now_iso

log = get_logger(__name__)

ClientFactory = Callable[[ExchangeRecord], BinanceClient]


@dataclass
class ClosePositionResult:
    success: bool
    position_id: str
    symbol: str = ""
    exit_price: float = 0.0
    exit_value: float = 0.0
    pnl: float = 0.0
    pnl_percent: float = 0.0
    order_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {
                "success": False,
                "positionId": self.position_id,
                "symbol": self.symbol,
                "error": self.error,
            }
        return {
            "success": True,
            "positionId": self.position_id,
            "symbol": self.symbol,
            "exitPrice": self.exit_price,
            "exitValue": self.exit_value,
            "pnl": self.pnl,
            "pnlPercent": self.pnl_percent,
            "orderId": self.order_id,
        }


@dataclass
class CloseAllResult:
    total: int = 0
    success: int = 0
    failed: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "results": self.results,
        }


class PositionManager:
    """Close positions through the exchange the portfolio is connected to."""

    def __init__(
        self,
        db: Database,
        config: AppConfig,
        client_factory: ClientFactory | None = None,
    ):
        self._db = db
        self._config = config
        self._client_factory = client_factory or (
            lambda exchange: client_for_exchange(exchange, config.binance)
        )

    async def close_position(
        self,
        position_id: str,
        side_effect_type: str | None = None,
        exit_reason: str = "MANUAL",
    ) -> ClosePositionResult:
        position = self._db.get_position(position_id)
        if position is None:
            return ClosePositionResult(False, position_id, error="Position not found")
        if position.status == "CLOSED":
            return ClosePositionResult(
                False, position_id, position.symbol, error="Position is already closed",
            )
        exchange = self._db.get_active_exchange(position.portfolio_id)
        if exchange is None:
            return ClosePositionResult(
                False, position_id, position.symbol, error="No active exchange found",
            )

        client = self._client_factory(exchange)
        try:
            router = OrderRouter(client, self._config.execution)
            await cancel_protective_orders(self._db, router, position)

            try:
                current_price = await client.get_ticker_price(position.symbol)
            except BinanceAPIError:
                current_price = position.entry_price
            order = build_close_order(position, side_effect_type, current_price)
            submitted = await router.submit_order(order)
            if not submitted.success:
                log.warning(
                    "position_manager.close_failed",
                    position_id=position_id,
                    error=submitted.error,
                )
                metrics.incr("positions.close_failed")
                return ClosePositionResult(
                    False, position_id, position.symbol,
                    error=submitted.error or "Close order failed",
                )
        finally:
            await client.close()

        fill = summarize_fill(
            submitted.response,
            position.symbol,
            self._config.trading.base_asset_suffixes,
            fallback_price=current_price,
        )
        exit_value = fill.quote_qty or position.quantity * fill.executed_price
        exit_price = exit_value / position.quantity if position.quantity else fill.executed_price
        pnl, pnl_percent = value_pnl(position.entry_value, exit_value, position.side)

        self._db.update_position(
            position_id,
            status="CLOSED",
            exit_price=exit_price,
            exit_value=exit_value,
            pnl=pnl,
            pnl_percent=pnl_percent,
            exit_reason=exit_reason,
            closed_at=utc_now_iso(),
        )
        record_exit_order(
            self._db,
            position,
            order_id=fill.order_id,
            client_order_id=fill.client_order_id or order.client_order_id,
            side=order.side,
            order_type=order.order_type,
            price=exit_price,
            quantity=position.quantity,
            value=exit_value,
            status=fill.status,
            transact_time=fill.transact_time,
        )
        if position.bot_id:
            self._db.record_bot_exit(position.bot_id, pnl, pnl_percent)
        safe_recalculate(self._db, position.portfolio_id)

        metrics.incr("positions.closed", reason=exit_reason)
        log.info(
            "position_manager.closed",
            position_id=position_id,
            symbol=position.symbol,
            exit_reason=exit_reason,
            exit_price=round(exit_price, 8),
            pnl=round(pnl, 4),
            pnl_percent=round(pnl_percent, 2),
        )
        return ClosePositionResult(
            success=True,
            position_id=position_id,
            symbol=position.symbol,
            exit_price=exit_price,
            exit_value=exit_value,
            pnl=pnl,
            pnl_percent=pnl_percent,
            order_id=fill.order_id,
        )

    async def close_all_positions(self, portfolio_id: str) -> CloseAllResult:
        """Close every OPEN position one after another."""
        positions = self._db.list_positions(portfolio_id, statuses=("OPEN",))
        summary = CloseAllResult(total=len(positions))
        delay = self._config.trading.close_all_delay_ms / 1000

        for i, position in enumerate(positions):
            if i:
                await asyncio.sleep(delay)
            try:
                result = await self.close_position(position.id)
            except Exception as e:
                log.error("position_manager.close_all_error", position_id=position.id, error=str(e))
                result = ClosePositionResult(False, position.id, position.symbol, error=str(e))
            if result.success:
                summary.success += 1
            else:
                summary.failed += 1
            summary.results.append({
                "position_id": position.id,
                "symbol": position.symbol,
                "success": result.success,
                "error": result.error,
            })

        log.info(
            "position_manager.close_all",
            portfolio_id=portfolio_id,
            total=summary.total,
            success=summary.success,
            failed=summary.failed,
        )
        return summary
