"""Exchange-side stop-loss and take-profit orders for open positions."""

from __future__ import annotations

from dataclasses import dataclass, field

from signalbot.execution.order_builder import build_protective_order
from signalbot.execution.order_router import OrderRouter
from signalbot.observability.logger import get_logger
from signalbot.storage.database import Database
from signalbot.storage.models import OrderRecord, PositionRecord

log = get_logger(__name__)


@dataclass
class ProtectiveResult:
    stop_loss_order_id: str | None = None
    take_profit_order_id: str | None = None
    warnings: list[str] = field(default_factory=list)


async def place_protective_orders(
    db: Database,
    router: OrderRouter,
    position: PositionRecord,
) -> ProtectiveResult:
    """Place SL/TP orders for the position's stored price levels.

    A failed placement is recorded as a warning on the position and never
    raises.
    """
    result = ProtectiveResult()
    levels = (
        ("STOP_LOSS", position.stop_loss),
        ("TAKE_PROFIT", position.take_profit),
    )
    for kind, level in levels:
        if not level or position.quantity <= 0:
            continue
        spec = build_protective_order(position, kind, level)
        order = await router.submit_order(spec)
        if not order.success:
            label = "Stop loss" if kind == "STOP_LOSS" else "Take profit"
            message = f"{label} order failed: {order.error}"
            result.warnings.append(message)
            log.warning(
                "protective_orders.failed",
                position_id=position.id,
                kind=kind,
                error=order.error,
            )
            continue

        db.insert_order(OrderRecord(
            portfolio_id=position.portfolio_id,
            position_id=position.id,
            order_id=order.order_id,
            client_order_id=spec.client_order_id,
            symbol=position.symbol,
            type=kind,
            side=spec.side,
            order_type=kind,
            status="NEW",
            price=level,
            stop_price=level,
            quantity=position.quantity,
            value=level * position.quantity,
            account_type=position.account_type,
            side_effect_type=spec.side_effect_type or "NO_SIDE_EFFECT",
        ))
        if kind == "STOP_LOSS":
            result.stop_loss_order_id = order.order_id
        else:
            result.take_profit_order_id = order.order_id
        log.info(
            "protective_orders.placed",
            position_id=position.id,
            kind=kind,
            order_id=order.order_id,
            stop_price=level,
        )

    updates: dict[str, str] = {}
    if result.stop_loss_order_id:
        updates["stop_loss_order_id"] = result.stop_loss_order_id
    if result.take_profit_order_id:
        updates["take_profit_order_id"] = result.take_profit_order_id
    if result.warnings:
        updates["warning_message"] = "; ".join(result.warnings)
    if updates:
        db.update_position(position.id, **updates)
    return result


async def cancel_protective_orders(
    db: Database,
    router: OrderRouter,
    position: PositionRecord,
) -> None:
    """Cancel outstanding SL/TP orders; failures are logged only."""
    for order_id in (position.stop_loss_order_id, position.take_profit_order_id):
        if not order_id:
            continue
        try:
            cancelled = await router.cancel_order(
                position.symbol, order_id, position.account_type,
            )
        except Exception as e:
            log.warning(
                "protective_orders.cancel_error",
                position_id=position.id,
                order_id=order_id,
                error=str(e),
            )
            continue
        if cancelled:
            db.set_order_status(position.id, order_id, "CANCELED")
