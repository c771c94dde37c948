"""P&L arithmetic and symbol helpers shared by the trading path."""

from __future__ import annotations

import math

QUOTE_ASSETS = ("USDT", "BUSD", "BTC", "ETH", "BNB", "USD")


def calculate_pnl(entry_price: float, exit_price: float, quantity: float, side: str) -> float:
    """Price-based P&L for a closed quantity."""
    if side == "LONG":
        return (exit_price - entry_price) * quantity
    return (entry_price - exit_price) * quantity


def calculate_pnl_percent(entry_price: float, exit_price: float, side: str) -> float:
    if entry_price <= 0:
        return 0.0
    if side == "LONG":
        return (exit_price - entry_price) / entry_price * 100
    return (entry_price - exit_price) / entry_price * 100


def value_pnl(entry_value: float, exit_value: float, side: str) -> tuple[float, float]:
    """Value-based P&L and P&L percent, as used when closing a position.

    LONG earns exit minus entry value, SHORT the reverse. The percent is
    relative to entry value and is 0 for a zero-value entry.
    """
    pnl = exit_value - entry_value if side == "LONG" else entry_value - exit_value
    pnl_percent = pnl / entry_value * 100 if entry_value > 0 else 0.0
    return pnl, pnl_percent


def stop_loss_price(entry_price: float, stop_loss_percent: float, side: str) -> float:
    if side == "LONG":
        return entry_price * (1 - stop_loss_percent / 100)
    return entry_price * (1 + stop_loss_percent / 100)


def take_profit_price(entry_price: float, take_profit_percent: float, side: str) -> float:
    if side == "LONG":
        return entry_price * (1 + take_profit_percent / 100)
    return entry_price * (1 - take_profit_percent / 100)


def risk_reward_ratio(entry_price: float, stop_loss: float, take_profit: float) -> float:
    """Reward distance over risk distance; 0 when risk is zero."""
    risk = abs(entry_price - stop_loss)
    reward = abs(take_profit - entry_price)
    return reward / risk if risk > 0 else 0.0


# ── Quantities ───────────────────────────────────────────────────────

def round_to_step(quantity: float, step_size: float) -> float:
    if step_size <= 0:
        return quantity
    # Nudge by a tiny epsilon so 0.3 / 0.1 does not floor to 2
    return math.floor(quantity / step_size + 1e-9) * step_size


def format_decimal(value: float, decimals: int = 8) -> str:
    return f"{value:.{decimals}f}"


def is_valid_quantity(quantity: float, min_qty: float, max_qty: float, step_size: float) -> bool:
    """Within [min, max] and on the step grid anchored at min."""
    if quantity < min_qty or quantity > max_qty:
        return False
    if step_size <= 0:
        return True
    steps = round((quantity - min_qty) / step_size)
    return abs(quantity - (min_qty + steps * step_size)) < step_size / 10


def meets_min_notional(price: float, quantity: float, min_notional: float) -> bool:
    return price * quantity >= min_notional


# ── Symbols ──────────────────────────────────────────────────────────

def parse_symbol(symbol: str) -> tuple[str, str] | None:
    """Split ``BTCUSDT`` into ``("BTC", "USDT")``; None if no known quote."""
    for quote in QUOTE_ASSETS:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return symbol[: -len(quote)], quote
    return None


def format_symbol(symbol: str) -> str:
    parsed = parse_symbol(symbol)
    return f"{parsed[0]}/{parsed[1]}" if parsed else symbol


def extract_base_asset(symbol: str, suffixes: tuple[str, ...] | list[str] = ("USDT", "BUSD", "USDC", "BNB")) -> str:
    """Strip one trailing quote suffix (fee accounting uses this)."""
    upper = symbol.upper()
    for suffix in suffixes:
        if upper.endswith(suffix) and len(upper) > len(suffix):
            return upper[: -len(suffix)]
    return upper
