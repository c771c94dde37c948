"""Request models for bot and signal management."""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from signalbot.signals.actions import normalize_action

_SYMBOL_RE = re.compile(r"^[A-Z0-9]+USDT?$")

_NON_NULLABLE = frozenset({
    "name", "description", "symbols", "position_percent", "order_type",
    "account_type", "leverage", "side_effect_type", "use_stop_loss",
    "use_take_profit", "webhook_secret", "is_active",
})


def _check_symbols(symbols: list[str] | None) -> list[str] | None:
    if symbols is None:
        return None
    cleaned = [s.strip().upper() for s in symbols]
    bad = [s for s in cleaned if not _SYMBOL_RE.match(s)]
    if bad:
        raise ValueError(f"Invalid symbol format: {', '.join(bad)}")
    return cleaned


class BotCreate(BaseModel):
    """Fields accepted when creating a signal bot."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    portfolio_id: str = Field(alias="portfolioId")
    exchange_id: str = Field(alias="exchangeId")
    name: str = Field(min_length=1, max_length=50)
    description: str = Field(default="", max_length=200)
    symbols: list[str] = Field(min_length=1, max_length=20)
    position_percent: float = Field(default=20.0, ge=1, le=100, alias="positionPercent")
    order_type: Literal["MARKET", "LIMIT"] = Field(default="MARKET", alias="orderType")
    account_type: Literal["SPOT", "MARGIN"] = Field(default="SPOT", alias="accountType")
    margin_type: Literal["CROSS", "ISOLATED"] | None = Field(default=None, alias="marginType")
    leverage: float = Field(default=1.0, ge=1, le=4)
    side_effect_type: Literal[
        "NO_SIDE_EFFECT", "MARGIN_BUY", "AUTO_REPAY", "AUTO_BORROW_REPAY"
    ] = Field(default="NO_SIDE_EFFECT", alias="sideEffectType")
    use_stop_loss: bool = Field(default=False, alias="useStopLoss")
    stop_loss: float | None = Field(default=None, ge=0.1, le=50, alias="stopLoss")
    use_take_profit: bool = Field(default=False, alias="useTakeProfit")
    take_profit: float | None = Field(default=None, ge=0.1, le=100, alias="takeProfit")
    max_daily_trades: int | None = Field(default=None, gt=0, le=1000, alias="maxDailyTrades")
    max_open_positions: int | None = Field(default=None, gt=0, le=100, alias="maxOpenPositions")
    max_position_size: float | None = Field(default=None, gt=0, alias="maxPositionSize")
    webhook_secret: str = Field(min_length=8, alias="webhookSecret")
    is_active: bool = Field(default=True, alias="isActive")

    @field_validator("order_type", "account_type", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("symbols")
    @classmethod
    def _symbols(cls, v: list[str]) -> list[str]:
        return _check_symbols(v) or []

    @model_validator(mode="after")
    def _risk_settings(self) -> BotCreate:
        if self.use_stop_loss and self.stop_loss is None:
            raise ValueError("stopLoss is required when useStopLoss is enabled")
        if self.use_take_profit and self.take_profit is None:
            raise ValueError("takeProfit is required when useTakeProfit is enabled")
        if self.account_type == "MARGIN" and self.margin_type is None:
            self.margin_type = "CROSS"
        return self


class BotUpdate(BaseModel):
    """Partial update; unset fields are left alone."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str | None = Field(default=None, min_length=1, max_length=50)
    description: str | None = Field(default=None, max_length=200)
    symbols: list[str] | None = Field(default=None, min_length=1, max_length=20)
    position_percent: float | None = Field(default=None, ge=1, le=100, alias="positionPercent")
    order_type: Literal["MARKET", "LIMIT"] | None = Field(default=None, alias="orderType")
    account_type: Literal["SPOT", "MARGIN"] | None = Field(default=None, alias="accountType")
    margin_type: Literal["CROSS", "ISOLATED"] | None = Field(default=None, alias="marginType")
    leverage: float | None = Field(default=None, ge=1, le=4)
    side_effect_type: Literal[
        "NO_SIDE_EFFECT", "MARGIN_BUY", "AUTO_REPAY", "AUTO_BORROW_REPAY"
    ] | None = Field(default=None, alias="sideEffectType")
    use_stop_loss: bool | None = Field(default=None, alias="useStopLoss")
    stop_loss: float | None = Field(default=None, ge=0.1, le=50, alias="stopLoss")
    use_take_profit: bool | None = Field(default=None, alias="useTakeProfit")
    take_profit: float | None = Field(default=None, ge=0.1, le=100, alias="takeProfit")
    max_daily_trades: int | None = Field(default=None, gt=0, le=1000, alias="maxDailyTrades")
    max_open_positions: int | None = Field(default=None, gt=0, le=100, alias="maxOpenPositions")
    max_position_size: float | None = Field(default=None, gt=0, alias="maxPositionSize")
    webhook_secret: str | None = Field(default=None, min_length=8, alias="webhookSecret")
    is_active: bool | None = Field(default=None, alias="isActive")

    @field_validator("order_type", "account_type", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @field_validator("symbols")
    @classmethod
    def _symbols(cls, v: list[str] | None) -> list[str] | None:
        return _check_symbols(v)

    @model_validator(mode="after")
    def _no_null_required(self) -> BotUpdate:
        # explicit null is only allowed where the stored bot accepts it
        nulled = sorted(
            name for name in self.model_fields_set
            if name in _NON_NULLABLE and getattr(self, name) is None
        )
        if nulled:
            raise ValueError(f"Cannot be null: {', '.join(nulled)}")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class SignalUpdate(BaseModel):
    """Manual correction of a stored signal."""
    model_config = ConfigDict(extra="forbid")

    action: str | None = None
    symbol: str | None = None
    price: float | None = Field(default=None, gt=0)
    message: str | None = Field(default=None, max_length=2000)
    processed: bool | None = None

    @field_validator("action")
    @classmethod
    def _action(cls, v: str | None) -> str | None:
        return normalize_action(v) if v is not None else None

    @field_validator("symbol")
    @classmethod
    def _symbol(cls, v: str | None) -> str | None:
        if v is None:
            return None
        checked = _check_symbols([v])
        return checked[0] if checked else None

    @model_validator(mode="after")
    def _no_null_required(self) -> SignalUpdate:
        nulled = sorted(
            name for name in self.model_fields_set & {"action", "symbol", "processed"}
            if getattr(self, name) is None
        )
        if nulled:
            raise ValueError(f"Cannot be null: {', '.join(nulled)}")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


def validation_messages(exc: ValidationError) -> dict[str, str]:
    """Field path to message, for 400 responses."""
    messages: dict[str, str] = {}
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ())) or "__root__"
        messages[field] = err.get("msg", "Invalid value")
    return messages
