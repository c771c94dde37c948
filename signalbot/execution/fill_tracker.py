"""Fill tracker: reconciles Binance order responses into stored rows.

An order response carries executedQty, cummulativeQuoteQty and a list of
fills with commissions. Commissions paid in the base asset reduce the
quantity actually held.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Iterable

from signalbot.analytics.pnl import extract_base_asset
from signalbot.engine.errors import TradingError
from signalbot.execution.order_builder import OrderSpec
from signalbot.observability.logger import get_logger
from signalbot.storage.database import Database
from signalbot.storage.models import OrderRecord, PositionRecord, utc_now_iso

log = get_logger(__name__)


@dataclass
class FillSummary:
    """Numbers extracted from one order response."""
    order_id: str
    client_order_id: str | None
    status: str
    executed_qty: float
    quote_qty: float
    executed_price: float
    base_commission: float
    transact_time: str | None

    @property
    def filled(self) -> bool:
        return self.status == "FILLED"

    @property
    def net_qty(self) -> float:
        return max(self.executed_qty - self.base_commission, 0.0)


def ms_to_iso(ms: Any) -> str | None:
    if ms in (None, ""):
        return None
    return dt.datetime.fromtimestamp(int(ms) / 1000, tz=dt.timezone.utc).isoformat()


def summarize_fill(
    response: dict[str, Any],
    symbol: str,
    suffixes: Iterable[str] = ("USDT", "BUSD", "USDC", "BNB"),
    fallback_price: float = 0.0,
) -> FillSummary:
    executed_qty = float(response.get("executedQty") or 0)
    quote_qty = float(response.get("cummulativeQuoteQty") or 0)
    if executed_qty > 0 and quote_qty > 0:
        price = quote_qty / executed_qty
    else:
        price = float(response.get("price") or 0) or fallback_price

    base_asset = extract_base_asset(symbol, tuple(suffixes))
    commission = sum(
        float(f.get("commission") or 0)
        for f in response.get("fills") or []
        if f.get("commissionAsset") == base_asset
    )
    return FillSummary(
        order_id=str(response.get("orderId", "")),
        client_order_id=response.get("clientOrderId"),
        status=str(response.get("status", "NEW")),
        executed_qty=executed_qty,
        quote_qty=quote_qty,
        executed_price=price,
        base_commission=commission,
        transact_time=ms_to_iso(response.get("transactTime")),
    )


def reconcile_entry(
    db: Database,
    position: PositionRecord,
    order: OrderSpec,
    response: dict[str, Any],
    suffixes: Iterable[str] = ("USDT", "BUSD", "USDC", "BNB"),
    stop_loss: float | None = None,
    take_profit: float | None = None,
) -> PositionRecord:
    """Apply an entry order response to its PENDING position.

    Unfilled orders keep the estimated quantity and stay PENDING.
    """
    fill = summarize_fill(response, position.symbol, suffixes, order.expected_price)
    quantity = fill.net_qty if fill.executed_qty > 0 else position.quantity
    entry_value = fill.quote_qty if fill.quote_qty > 0 else position.entry_value
    status = "OPEN" if fill.filled else "PENDING"

    db.update_position(
        position.id,
        status=status,
        entry_price=fill.executed_price,
        quantity=quantity,
        entry_value=entry_value,
        stop_loss=stop_loss,
        take_profit=take_profit,
    )
    db.insert_order(OrderRecord(
        portfolio_id=position.portfolio_id,
        position_id=position.id,
        order_id=fill.order_id,
        client_order_id=fill.client_order_id or order.client_order_id,
        symbol=position.symbol,
        type="ENTRY",
        side=order.side,
        order_type=order.order_type,
        status=fill.status,
        price=fill.executed_price,
        quantity=float(order.quantity or quantity),
        value=entry_value,
        executed_qty=fill.executed_qty,
        cummulative_quote_qty=fill.quote_qty,
        fill_percent=100.0 if fill.filled else 0.0,
        account_type=order.account_type,
        side_effect_type=order.side_effect_type or "NO_SIDE_EFFECT",
        transact_time=fill.transact_time,
    ))

    if fill.base_commission:
        log.info(
            "fill_tracker.commission_deducted",
            position_id=position.id,
            commission=fill.base_commission,
            net_qty=quantity,
        )
    log.info(
        "fill_tracker.entry_reconciled",
        position_id=position.id,
        symbol=position.symbol,
        status=status,
        executed_qty=fill.executed_qty,
        executed_price=round(fill.executed_price, 8),
    )
    updated = db.get_position(position.id)
    if updated is None:
        raise TradingError(f"Position {position.id} disappeared during reconciliation")
    return updated


def record_exit_order(
    db: Database,
    position: PositionRecord,
    *,
    order_id: str,
    side: str,
    order_type: str,
    price: float,
    quantity: float,
    value: float,
    status: str = "FILLED",
    client_order_id: str | None = None,
    transact_time: str | None = None,
) -> str:
    return db.insert_order(OrderRecord(
        portfolio_id=position.portfolio_id,
        position_id=position.id,
        order_id=order_id,
        client_order_id=client_order_id,
        symbol=position.symbol,
        type="EXIT",
        side=side,
        order_type=order_type,
        status=status,
        price=price,
        quantity=quantity,
        value=value,
        executed_qty=quantity,
        cummulative_quote_qty=value,
        fill_percent=100.0,
        account_type=position.account_type,
        side_effect_type=position.side_effect_type,
        transact_time=transact_time or utc_now_iso(),
    ))
