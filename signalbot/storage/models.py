"""Database models: Pydantic models for storage records."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ── Enumerations (stored as plain strings) ───────────────────────────

SIGNAL_ACTIONS = ("ENTER_LONG", "EXIT_LONG", "ENTER_SHORT", "EXIT_SHORT")
POSITION_SIDES = ("LONG", "SHORT")
POSITION_STATUSES = ("PENDING", "OPEN", "CLOSED")
ORDER_RECORD_TYPES = ("ENTRY", "EXIT", "STOP_LOSS", "TAKE_PROFIT")
ACCOUNT_TYPES = ("SPOT", "MARGIN")
SIDE_EFFECT_TYPES = (
    "NO_SIDE_EFFECT", "MARGIN_BUY", "AUTO_REPAY", "AUTO_BORROW_REPAY",
)
TRADING_SOURCES = ("MANUAL", "SIGNAL_BOT")


class PortfolioRecord(BaseModel):
    """A user's portfolio and its derived statistics."""
    id: str = ""
    user_id: str
    name: str = "Main"
    initial_balance: float = 0.0
    current_balance: float = 0.0
    total_value: float = 0.0
    total_pnl: float = 0.0
    total_pnl_percent: float = 0.0
    daily_pnl: float = 0.0
    weekly_pnl: float = 0.0
    monthly_pnl: float = 0.0
    total_trades: int = 0
    active_trades: int = 0
    total_wins: int = 0
    total_losses: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    profit_factor: float = 0.0
    last_calculated_at: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class ExchangeRecord(BaseModel):
    """Connected Binance account credentials and cached valuation."""
    id: str = ""
    portfolio_id: str
    name: str = "BINANCE"
    api_key: str = Field(default="", repr=False)
    api_secret: str = Field(default="", repr=False)
    is_active: bool = True
    spot_value: float = 0.0
    margin_value: float = 0.0
    total_value: float = 0.0
    last_synced_at: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class BotRecord(BaseModel):
    """Signal bot configuration and running counters."""
    id: str = ""
    portfolio_id: str
    exchange_id: str
    name: str
    description: str = ""
    is_active: bool = True
    symbols: list[str] = Field(default_factory=list)
    position_percent: float = 20.0
    order_type: str = "MARKET"
    account_type: str = "SPOT"
    margin_type: str | None = None
    leverage: float = 1.0
    side_effect_type: str = "NO_SIDE_EFFECT"
    use_stop_loss: bool = False
    stop_loss: float | None = None
    use_take_profit: bool = False
    take_profit: float | None = None
    max_daily_trades: int | None = None
    max_open_positions: int | None = None
    max_position_size: float | None = None
    webhook_secret: str = Field(default="", repr=False)
    total_trades: int = 0
    win_trades: int = 0
    loss_trades: int = 0
    total_pnl: float = 0.0
    total_volume: float = 0.0
    best_trade_return: float = 0.0
    worst_trade_return: float = 0.0
    last_trade_at: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class SignalRecord(BaseModel):
    """A webhook alert resolved to a bot."""
    id: str = ""
    bot_id: str
    action: str
    symbol: str
    price: float | None = None
    message: str | None = None
    processed: bool = False
    processed_at: str | None = None
    error: str | None = None
    position_id: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)


class PositionRecord(BaseModel):
    """A tracked position, from PENDING through CLOSED."""
    id: str = ""
    portfolio_id: str
    bot_id: str | None = None
    symbol: str
    side: str
    type: str = "MARKET"
    account_type: str = "SPOT"
    margin_type: str | None = None
    side_effect_type: str = "NO_SIDE_EFFECT"
    source: str = "MANUAL"
    status: str = "PENDING"
    entry_price: float = 0.0
    quantity: float = 0.0
    entry_value: float = 0.0
    exit_price: float | None = None
    exit_value: float | None = None
    pnl: float = 0.0
    pnl_percent: float = 0.0
    stop_loss: float | None = None
    take_profit: float | None = None
    stop_loss_order_id: str | None = None
    take_profit_order_id: str | None = None
    exit_reason: str | None = None
    warning_message: str | None = None
    opened_at: str = Field(default_factory=utc_now_iso)
    closed_at: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class OrderRecord(BaseModel):
    """An exchange order tied to a position."""
    id: str = ""
    portfolio_id: str
    position_id: str | None = None
    order_id: str
    client_order_id: str | None = None
    symbol: str
    type: str
    side: str
    order_type: str = "MARKET"
    status: str = "NEW"
    price: float = 0.0
    stop_price: float | None = None
    quantity: float = 0.0
    value: float = 0.0
    executed_qty: float = 0.0
    cummulative_quote_qty: float = 0.0
    fill_percent: float = 0.0
    account_type: str = "SPOT"
    side_effect_type: str = "NO_SIDE_EFFECT"
    transact_time: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class BalanceSnapshotRecord(BaseModel):
    """Point-in-time portfolio value for history charts."""
    id: int | None = None
    portfolio_id: str
    total_value: float = 0.0
    total_pnl: float = 0.0
    timestamp: str = Field(default_factory=utc_now_iso)
