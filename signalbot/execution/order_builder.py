"""Order builder: normalises trade requests and constructs Binance orders.

Creates order specifications that the order router can submit:
  - Entry orders (market or limit, spot or cross-margin)
  - Close orders (market, opposite side of the position)
  - Protective STOP_LOSS / TAKE_PROFIT orders
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from typing import Any

from signalbot.analytics.pnl import format_decimal
from signalbot.engine.errors import ValidationError
from signalbot.policy.position_sizer import TradeParams
from signalbot.storage.models import ExchangeRecord, PositionRecord

_ACTION_TO_SIDE = {
    "ENTER_LONG": "BUY",
    "EXIT_LONG": "SELL",
    "ENTER_SHORT": "SELL",
    "EXIT_SHORT": "BUY",
}


@dataclass
class TradeRequest:
    """A manual or signal-driven trade, before normalisation."""
    portfolio_id: str
    exchange: ExchangeRecord
    symbol: str
    order_type: str = "MARKET"
    account_type: str = "SPOT"
    source: str = "MANUAL"
    bot_id: str | None = None
    action: str | None = None
    side: str | None = None
    quantity: float | None = None
    quote_order_qty: float | None = None
    price: float | None = None
    side_effect_type: str | None = None
    time_in_force: str | None = None
    stop_loss: float | None = None      # percent
    take_profit: float | None = None    # percent


def position_side_for(order_side: str) -> str:
    return "LONG" if order_side == "BUY" else "SHORT"


def opposite_side(position_side: str) -> str:
    """Order side that unwinds a position."""
    return "SELL" if position_side == "LONG" else "BUY"


def normalize_request(request: TradeRequest) -> TradeRequest:
    """Resolve side from action and fill defaults.

    An explicit side wins over an action.
    """
    side = (request.side or "").upper() or _ACTION_TO_SIDE.get(request.action or "")
    if side not in ("BUY", "SELL"):
        raise ValidationError("Either a valid side or signal action is required")

    account_type = request.account_type.upper()
    order_type = request.order_type.upper()
    if account_type == "MARGIN":
        side_effect = request.side_effect_type or "AUTO_BORROW_REPAY"
    else:
        side_effect = None
    time_in_force = request.time_in_force or ("GTC" if order_type == "LIMIT" else None)

    return dataclasses.replace(
        request,
        symbol=request.symbol.upper(),
        side=side,
        order_type=order_type,
        account_type=account_type,
        side_effect_type=side_effect,
        time_in_force=time_in_force,
    )


@dataclass
class OrderSpec:
    """Specification for an order to be placed on Binance."""
    symbol: str
    side: str                      # "BUY" | "SELL"
    order_type: str                # "MARKET" | "LIMIT" | "STOP_LOSS" | "TAKE_PROFIT"
    account_type: str              # "SPOT" | "MARGIN"
    quantity: str | None = None
    quote_order_qty: str | None = None
    price: str | None = None
    stop_price: str | None = None
    time_in_force: str | None = None
    side_effect_type: str | None = None
    client_order_id: str = field(default_factory=lambda: f"sb_{uuid.uuid4().hex[:20]}")
    expected_price: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_params(self) -> dict[str, Any]:
        """Binance REST parameters, omitting unset fields."""
        params: dict[str, Any] = {
            "symbol": self.symbol,
            "side": self.side,
            "type": self.order_type,
            "quantity": self.quantity,
            "quoteOrderQty": self.quote_order_qty,
            "price": self.price,
            "stopPrice": self.stop_price,
            "timeInForce": self.time_in_force,
            "newClientOrderId": self.client_order_id,
        }
        if self.account_type == "MARGIN" and self.side_effect_type:
            params["sideEffectType"] = self.side_effect_type
        return {k: v for k, v in params.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "order_type": self.order_type,
            "account_type": self.account_type,
            "quantity": self.quantity,
            "quote_order_qty": self.quote_order_qty,
            "price": self.price,
            "stop_price": self.stop_price,
            "client_order_id": self.client_order_id,
        }


def build_entry_order(request: TradeRequest, params: TradeParams) -> OrderSpec:
    if request.order_type == "LIMIT" and not (params.quantity and params.price):
        raise ValidationError("Quantity and price required for limit orders")
    return OrderSpec(
        symbol=request.symbol,
        side=request.side or "BUY",
        order_type=request.order_type,
        account_type=request.account_type,
        quantity=params.quantity,
        quote_order_qty=params.quote_order_qty,
        price=params.price,
        time_in_force=request.time_in_force if request.order_type == "LIMIT" else None,
        side_effect_type=request.side_effect_type,
        expected_price=params.expected_price,
    )


def build_close_order(
    position: PositionRecord,
    side_effect_type: str | None = None,
    expected_price: float = 0.0,
) -> OrderSpec:
    if position.account_type == "MARGIN":
        side_effect = side_effect_type or "AUTO_REPAY"
    else:
        side_effect = None
    return OrderSpec(
        symbol=position.symbol,
        side=opposite_side(position.side),
        order_type="MARKET",
        account_type=position.account_type,
        quantity=format_decimal(position.quantity),
        side_effect_type=side_effect,
        expected_price=expected_price or position.entry_price,
    )


def build_protective_order(
    position: PositionRecord,
    kind: str,
    stop_price: float,
) -> OrderSpec:
    """STOP_LOSS or TAKE_PROFIT market-trigger order for a position."""
    if kind not in ("STOP_LOSS", "TAKE_PROFIT"):
        raise ValueError(f"Unknown protective order kind: {kind}")
    return OrderSpec(
        symbol=position.symbol,
        side=opposite_side(position.side),
        order_type=kind,
        account_type=position.account_type,
        quantity=format_decimal(position.quantity),
        stop_price=format_decimal(stop_price),
        side_effect_type="AUTO_REPAY" if position.account_type == "MARGIN" else None,
        expected_price=stop_price,
    )
