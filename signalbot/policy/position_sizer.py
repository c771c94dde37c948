"""Position sizer: turns a trade request into exchange-ready quantities.

Two sizing paths:
  - Signal bots: portfolio value × position percent / 100, capped by the
    bot's max position size, divided by price and scaled by leverage
  - Trade params: quantity or quote amount rounded down to the symbol's
    LOT_SIZE step, checked against min/max quantity and min notional,
    with stop-loss and take-profit prices derived from percentages
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from signalbot.analytics.pnl import (
    format_decimal,
    round_to_step,
    stop_loss_price,
    take_profit_price,
)
from signalbot.connectors.binance_client import SymbolInfo
from signalbot.engine.errors import ValidationError
from signalbot.observability.logger import get_logger

log = get_logger(__name__)


@dataclass
class SymbolFilters:
    """Numeric view of a symbol's PRICE_FILTER, LOT_SIZE and notional rules."""
    min_price: float = 0.0
    max_price: float = 999999999.0
    tick_size: float = 0.01
    min_qty: float = 0.0
    max_qty: float = 999999999.0
    step_size: float = 0.00000001
    min_notional: float = 10.0

    @classmethod
    def from_symbol_info(cls, info: SymbolInfo) -> SymbolFilters:
        price = info.price_filter
        lot = info.lot_size_filter
        notional = info.min_notional_filter
        return cls(
            min_price=float(price.get("minPrice") or 0),
            max_price=float(price.get("maxPrice") or 999999999),
            tick_size=float(price.get("tickSize") or 0.01),
            min_qty=float(lot.get("minQty") or 0),
            max_qty=float(lot.get("maxQty") or 999999999),
            step_size=float(lot.get("stepSize") or 0.00000001),
            min_notional=float(notional.get("minNotional") or notional.get("notional") or 10),
        )


@dataclass
class SignalSize:
    """Computed size for a signal-bot entry."""
    portfolio_value: float
    position_value: float
    quantity: float
    capped_by: str  # "percent" | "max_position_size"

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


@dataclass
class TradeParams:
    """Exchange-ready order parameters."""
    expected_price: float
    estimated_quantity: float
    quantity: str | None = None
    quote_order_qty: str | None = None
    price: str | None = None
    stop_loss_price: float | None = None
    take_profit_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.__dict__


def size_signal_position(
    portfolio_value: float,
    position_percent: float,
    price: float,
    leverage: float = 1.0,
    max_position_size: float | None = None,
) -> SignalSize:
    """Size a signal-bot entry from portfolio percentage and leverage."""
    if portfolio_value <= 0:
        raise ValidationError("Invalid portfolio value. Please sync your exchange.")
    if price <= 0:
        raise ValidationError("Invalid price for position sizing")

    position_value = portfolio_value * position_percent / 100
    capped_by = "percent"
    if max_position_size and position_value > max_position_size:
        position_value = max_position_size
        capped_by = "max_position_size"

    quantity = position_value / price * (leverage or 1.0)

    log.info(
        "position_sizer.sized",
        portfolio_value=round(portfolio_value, 2),
        position_percent=position_percent,
        position_value=round(position_value, 2),
        leverage=leverage,
        quantity=quantity,
        capped_by=capped_by,
    )
    return SignalSize(
        portfolio_value=portfolio_value,
        position_value=position_value,
        quantity=quantity,
        capped_by=capped_by,
    )


def _round_price(price: float, tick_size: float) -> float:
    if tick_size <= 0:
        return price
    return math.floor(price / tick_size + 1e-9) * tick_size


def calculate_trade_params(
    *,
    side: str,
    order_type: str,
    current_price: float,
    filters: SymbolFilters,
    quantity: float | None = None,
    quote_order_qty: float | None = None,
    limit_price: float | None = None,
    stop_loss_percent: float | None = None,
    take_profit_percent: float | None = None,
) -> TradeParams:
    """Compute exchange-ready quantities and protective price levels.

    Raises ValidationError when the order cannot satisfy the symbol's
    filters.
    """
    price_str: str | None = None
    if order_type == "LIMIT":
        if not limit_price:
            raise ValidationError("Price required for limit orders")
        price_str = format_decimal(_round_price(limit_price, filters.tick_size))

    expected_price = float(price_str) if price_str else current_price
    if expected_price <= 0:
        raise ValidationError("Unable to determine execution price")

    quote_str: str | None = None
    if quantity:
        rounded = round_to_step(quantity, filters.step_size)
    elif quote_order_qty:
        quote_str = format_decimal(quote_order_qty)
        rounded = round_to_step(quote_order_qty / expected_price, filters.step_size)
    else:
        raise ValidationError("Either quantity or quoteOrderQty must be provided")

    qty_str = format_decimal(rounded)
    qty_value = float(qty_str)
    if qty_value <= 0 or qty_value < filters.min_qty:
        raise ValidationError(f"Quantity {qty_str} is below minimum {filters.min_qty}")
    if qty_value > filters.max_qty:
        raise ValidationError(f"Quantity {qty_str} is above maximum {filters.max_qty}")
    if qty_value * expected_price < filters.min_notional:
        raise ValidationError(
            f"Order value {qty_value * expected_price:.2f} is below minimum notional "
            f"{filters.min_notional}"
        )

    position_side = "LONG" if side == "BUY" else "SHORT"
    sl_price = (
        stop_loss_price(expected_price, stop_loss_percent, position_side)
        if stop_loss_percent else None
    )
    tp_price = (
        take_profit_price(expected_price, take_profit_percent, position_side)
        if take_profit_percent else None
    )

    # A market order sized in quote currency is sent by quote amount alone
    send_quantity = None if (order_type == "MARKET" and quote_str) else qty_str
    return TradeParams(
        expected_price=expected_price,
        estimated_quantity=qty_value,
        quantity=send_quantity,
        quote_order_qty=quote_str if send_quantity is None else None,
        price=price_str,
        stop_loss_price=sl_price,
        take_profit_price=tp_price,
    )
