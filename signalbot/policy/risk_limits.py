"""Risk limits: pre-trade validation for manual and signal-bot orders.

Checks every rule before a trade is sent. Errors accumulate so the
caller sees all violations at once.

Rules:
  1. Symbol exists and is tradeable
  2. Spot / margin trading allowed for the account type
  3. Current price available
  4. Signal-bot limits (bot exists, active, symbol configured)
  5. Balance: free quote for spot buys, free base for spot sells,
     net asset plus borrowable amount for margin
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from signalbot.connectors.binance_client import BinanceAPIError, BinanceClient, SymbolInfo
from signalbot.execution.order_builder import TradeRequest
from signalbot.observability.logger import get_logger
from signalbot.policy.position_sizer import SymbolFilters
from signalbot.storage.database import Database

log = get_logger(__name__)

_BORROWING_SIDE_EFFECTS = ("MARGIN_BUY", "AUTO_BORROW_REPAY")


@dataclass
class ValidationData:
    """Market context gathered while validating."""
    symbol_info: SymbolInfo | None = None
    filters: SymbolFilters = field(default_factory=SymbolFilters)
    current_price: float = 0.0
    balance_asset: str = ""
    available_balance: float = 0.0
    max_borrowable: float = 0.0


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    data: ValidationData = field(default_factory=ValidationData)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "current_price": self.data.current_price,
            "available_balance": self.data.available_balance,
        }


def check_bot_limits(db: Database, request: TradeRequest) -> list[str]:
    """Bot-level gate for SIGNAL_BOT trades."""
    if request.source != "SIGNAL_BOT":
        return []
    if not request.bot_id:
        return ["Signal bot trades require a bot id"]
    bot = db.get_bot(request.bot_id)
    if bot is None:
        return ["Bot not found"]
    errors: list[str] = []
    if not bot.is_active:
        errors.append("Bot is not active")
    if bot.symbols and request.symbol not in bot.symbols:
        errors.append(f"Symbol {request.symbol} is not configured for this bot")
    return errors


def required_amount(request: TradeRequest, price: float) -> float:
    """Amount of the balance asset the order consumes.

    Buys consume quote currency; sells consume base currency.
    """
    if request.side == "BUY":
        if request.quote_order_qty:
            return float(request.quote_order_qty)
        return float(request.quantity or 0) * price
    if request.quantity:
        return float(request.quantity)
    if request.quote_order_qty and price > 0:
        return float(request.quote_order_qty) / price
    return 0.0


async def _margin_capacity(
    client: BinanceClient, asset: str, side_effect: str | None
) -> tuple[float, float]:
    account = await client.get_margin_account()
    available = 0.0
    for entry in account.get("userAssets", []):
        if entry.get("asset") == asset:
            available = float(entry.get("netAsset") or 0)
            break
    borrowable = 0.0
    if side_effect in _BORROWING_SIDE_EFFECTS:
        try:
            borrowable = await client.get_max_borrowable(asset)
        except BinanceAPIError as e:
            log.warning("risk_limits.max_borrowable_failed", asset=asset, error=str(e))
    return available, borrowable


async def validate_trade_request(
    db: Database,
    client: BinanceClient,
    request: TradeRequest,
    check_balance: bool = True,
) -> ValidationResult:
    """Run all pre-trade checks for a normalised request."""
    errors: list[str] = []
    data = ValidationData()

    info = await client.get_symbol_info(request.symbol)
    if info is None or (info.status and info.status != "TRADING"):
        errors.append(f"Symbol {request.symbol} not found or not tradeable")
        return ValidationResult(is_valid=False, errors=errors, data=data)
    data.symbol_info = info
    data.filters = SymbolFilters.from_symbol_info(info)

    if request.account_type == "SPOT" and not info.is_spot_trading_allowed:
        errors.append(f"Spot trading is not allowed for {request.symbol}")
    if request.account_type == "MARGIN" and not info.is_margin_trading_allowed:
        errors.append(f"Margin trading is not allowed for {request.symbol}")

    try:
        data.current_price = await client.get_ticker_price(request.symbol)
    except BinanceAPIError as e:
        log.warning("risk_limits.price_failed", symbol=request.symbol, error=str(e))
    if data.current_price <= 0:
        errors.append(f"Unable to fetch current price for {request.symbol}")

    errors.extend(check_bot_limits(db, request))

    if check_balance and not errors:
        price = float(request.price or 0) or data.current_price
        required = required_amount(request, price)
        asset = info.quote_asset if request.side == "BUY" else info.base_asset
        data.balance_asset = asset

        if request.account_type == "MARGIN":
            available, borrowable = await _margin_capacity(
                client, asset, request.side_effect_type,
            )
            data.available_balance = available
            data.max_borrowable = borrowable
            capacity = available + borrowable
        else:
            balances = {b.asset: b for b in await client.get_balances()}
            held = balances.get(asset)
            data.available_balance = held.free if held else 0.0
            capacity = data.available_balance

        if required > capacity:
            errors.append(
                f"Insufficient balance. Required: {required:.8f} {asset}, "
                f"Available: {capacity:.8f} {asset}"
            )

    if errors:
        log.info(
            "risk_limits.rejected",
            symbol=request.symbol,
            side=request.side,
            errors=errors,
        )
    return ValidationResult(is_valid=not errors, errors=errors, data=data)
