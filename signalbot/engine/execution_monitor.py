"""Execution monitor: closes positions when protective orders fill.

Binance pushes an ``executionReport`` event on the user-data stream for
every order update. Short field names used here::

    e  event type        X  order status      i  order id
    s  symbol            S  side              o  order type
    c  client order id   L  last fill price   z  cumulative filled qty
    Z  cumulative quote  T  transaction time (ms)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from signalbot.analytics.pnl import calculate_pnl
from signalbot.analytics.portfolio_stats import safe_recalculate
from signalbot.execution.fill_tracker import ms_to_iso, record_exit_order
from signalbot.observability.logger import get_logger
from signalbot.observability.metrics import metrics
from signalbot.storage.database import Database
from signalbot.storage.models import utc_now_iso

log = get_logger(__name__)


@dataclass
class ExecutionReportResult:
    handled: bool
    reason: str = ""
    position_id: str | None = None
    exit_reason: str | None = None
    pnl: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


def handle_execution_report(db: Database, event: dict[str, Any]) -> ExecutionReportResult:
    """Close the position whose SL or TP order just filled."""
    if event.get("X") != "FILLED":
        return ExecutionReportResult(False, reason="not_filled")

    order_id = str(event.get("i", ""))
    position = db.find_position_by_protective_order(order_id)
    if position is None:
        return ExecutionReportResult(False, reason="no_matching_position")

    is_take_profit = position.take_profit_order_id == order_id
    exit_reason = "TAKE_PROFIT" if is_take_profit else "STOP_LOSS"
    other_order_id = (
        position.stop_loss_order_id if is_take_profit else position.take_profit_order_id
    )

    exit_price = float(event.get("L") or 0)
    exit_value = float(event.get("Z") or 0)
    executed_qty = float(event.get("z") or 0) or position.quantity
    closed_at = ms_to_iso(event.get("T")) or utc_now_iso()

    pnl = calculate_pnl(position.entry_price, exit_price, executed_qty, position.side)
    pnl_percent = pnl / position.entry_value * 100 if position.entry_value > 0 else 0.0

    db.update_position(
        position.id,
        status="CLOSED",
        exit_price=exit_price,
        exit_value=exit_value,
        pnl=pnl,
        pnl_percent=pnl_percent,
        exit_reason=exit_reason,
        closed_at=closed_at,
    )
    db.set_order_status(position.id, order_id, "FILLED")
    if other_order_id:
        db.set_order_status(position.id, other_order_id, "CANCELED")

    record_exit_order(
        db,
        position,
        order_id=order_id,
        client_order_id=event.get("c"),
        side=str(event.get("S", "")),
        order_type=str(event.get("o", "MARKET")),
        price=exit_price,
        quantity=executed_qty,
        value=exit_value,
        transact_time=closed_at,
    )
    if position.bot_id:
        db.record_bot_exit(position.bot_id, pnl, pnl_percent)
    safe_recalculate(db, position.portfolio_id)

    metrics.incr("positions.closed", reason=exit_reason)
    log.info(
        "execution_monitor.position_closed",
        position_id=position.id,
        symbol=event.get("s", position.symbol),
        exit_reason=exit_reason,
        exit_price=exit_price,
        pnl=round(pnl, 4),
    )
    return ExecutionReportResult(
        handled=True,
        position_id=position.id,
        exit_reason=exit_reason,
        pnl=pnl,
    )
