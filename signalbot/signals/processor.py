"""Signal processor: turns a stored signal into a trade.

Entries are sized from the exchange's portfolio value, the bot's position
percent and leverage, then executed through the trading engine. Exits
close the bot's matching OPEN position through the position manager.

Every processed signal is marked with its outcome: the position it opened
or closed, or the error that stopped it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from signalbot.analytics.portfolio_stats import safe_recalculate
from signalbot.config import AppConfig
from signalbot.connectors.binance_client import BinanceAPIError, BinanceClient, client_for_exchange
from signalbot.engine.errors import ValidationError
from signalbot.engine.position_manager import PositionManager
from signalbot.engine.trading_engine import TradingEngine
from signalbot.execution.order_builder import TradeRequest
from signalbot.observability.logger import get_logger, log_context
from signalbot.observability.metrics import metrics
from signalbot.policy.position_sizer import size_signal_position
from signalbot.signals.actions import (
    InvalidActionError,
    action_side,
    is_entry,
    normalize_action,
)
from signalbot.signals.validator import SignalValidator
from signalbot.storage.database import Database
from signalbot.storage.models import BotRecord, ExchangeRecord, SignalRecord

log = get_logger(__name__)


@dataclass
class SignalResult:
    success: bool
    skipped: bool = False
    skip_reason: str | None = None
    position_id: str | None = None
    message: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "skipReason": self.skip_reason,
            "positionId": self.position_id,
            "message": self.message,
            "error": self.error,
        }


class SignalProcessor:
    """Process signals for any bot, one at a time."""

    def __init__(
        self,
        db: Database,
        config: AppConfig,
        client_factory: Callable[[ExchangeRecord], BinanceClient] | None = None,
    ):
        self._db = db
        self._config = config
        self._client_factory = client_factory or (
            lambda exchange: client_for_exchange(exchange, config.binance)
        )
        self._validator = SignalValidator(db, config.validator)

    async def process(self, signal_id: str) -> SignalResult:
        signal = self._db.get_signal(signal_id)
        if signal is None:
            return SignalResult(False, error="Signal not found")
        if signal.processed:
            return SignalResult(False, skipped=True, skip_reason="Signal already processed")

        try:
            with log_context(signal_id=signal_id, bot_id=signal.bot_id):
                result = await self._process(signal)
        except Exception as e:
            log.error(
                "signal_processor.error",
                signal_id=signal_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            result = SignalResult(False, error=str(e))

        self._db.mark_signal_processed(
            signal_id,
            error=result.error or result.skip_reason,
            position_id=result.position_id,
        )
        if result.success:
            metrics.incr("signals.processed")
            safe_recalculate(self._db, self._portfolio_id(signal))
        elif result.skipped:
            metrics.incr("signals.skipped")
        else:
            metrics.incr("signals.failed")

        log.info(
            "signal_processor.done",
            signal_id=signal_id,
            action=signal.action,
            symbol=signal.symbol,
            success=result.success,
            skipped=result.skipped,
            position_id=result.position_id,
            error=result.error or result.skip_reason,
        )
        return result

    def _portfolio_id(self, signal: SignalRecord) -> str:
        bot = self._db.get_bot(signal.bot_id)
        return bot.portfolio_id if bot else ""

    async def _process(self, signal: SignalRecord) -> SignalResult:
        bot = self._db.get_bot(signal.bot_id)
        if bot is None:
            return SignalResult(False, error="Bot not found")
        if not bot.is_active:
            return SignalResult(False, skipped=True, skip_reason="Bot is inactive")

        exchange = self._db.get_exchange(bot.exchange_id)
        if exchange is None or not exchange.is_active:
            return SignalResult(False, error="Exchange not found or inactive")

        action = normalize_action(signal.action)
        client = self._client_factory(exchange)
        try:
            price = signal.price or 0.0
            if price <= 0:
                try:
                    price = await client.get_ticker_price(signal.symbol)
                except BinanceAPIError as e:
                    log.warning("signal_processor.price_failed", symbol=signal.symbol, error=str(e))
                    price = 0.0
            if price <= 0:
                return SignalResult(False, error=f"Unable to determine price for {signal.symbol}")

            guard = self._validator.check_daily_limits(bot)
            if not guard.allowed:
                return SignalResult(False, error=guard.reason)

            if is_entry(action):
                return await self._enter(signal, bot, exchange, client, action, price)
        finally:
            await client.close()
        return await self._exit(signal, bot, action)

    async def _enter(
        self,
        signal: SignalRecord,
        bot: BotRecord,
        exchange: ExchangeRecord,
        client: BinanceClient,
        action: str,
        price: float,
    ) -> SignalResult:
        side = action_side(action)
        if self._db.find_open_position(bot.id, signal.symbol, side):
            return SignalResult(
                False, skipped=True,
                skip_reason=f"{side} position already open for {signal.symbol}",
            )
        if bot.max_open_positions and self._db.count_open_positions(bot.id) >= bot.max_open_positions:
            return SignalResult(
                False, skipped=True,
                skip_reason=f"Max open positions reached ({bot.max_open_positions})",
            )

        try:
            size = size_signal_position(
                exchange.total_value,
                bot.position_percent,
                price,
                leverage=bot.leverage,
                max_position_size=bot.max_position_size,
            )
        except ValidationError as e:
            return SignalResult(False, error=str(e))
        below_min = self._validator.check_portfolio_value(size.portfolio_value)
        if below_min:
            return SignalResult(False, error=below_min)

        is_limit = bot.order_type.upper() == "LIMIT"
        request = TradeRequest(
            portfolio_id=bot.portfolio_id,
            exchange=exchange,
            symbol=signal.symbol,
            order_type="LIMIT" if is_limit else "MARKET",
            account_type=bot.account_type,
            source="SIGNAL_BOT",
            bot_id=bot.id,
            action=action,
            quantity=size.quantity,
            price=price if is_limit else None,
            side_effect_type=bot.side_effect_type if bot.account_type == "MARGIN" else None,
            stop_loss=bot.stop_loss if bot.use_stop_loss else None,
            take_profit=bot.take_profit if bot.use_take_profit else None,
        )
        engine = TradingEngine(self._db, client, self._config)
        trade = await engine.execute(request)
        if not trade.success:
            return SignalResult(False, error=trade.error)

        position = self._db.get_position(trade.position_id or "")
        volume = position.entry_value if position else size.position_value
        self._db.record_bot_entry(bot.id, volume)
        return SignalResult(
            True,
            position_id=trade.position_id,
            message=(
                f"Opened {side} {signal.symbol}: {trade.executed_qty:.8f} "
                f"@ {trade.executed_price:.8f}"
            ),
        )

    async def _exit(self, signal: SignalRecord, bot: BotRecord, action: str) -> SignalResult:
        side = action_side(action)
        position = self._db.find_open_position(bot.id, signal.symbol, side)
        if position is None:
            return SignalResult(
                False, skipped=True,
                skip_reason=f"No open {side} position for {signal.symbol}",
            )
        manager = PositionManager(self._db, self._config, self._client_factory)
        closed = await manager.close_position(position.id, exit_reason="SIGNAL")
        if not closed.success:
            return SignalResult(False, position_id=position.id, error=closed.error)
        return SignalResult(
            True,
            position_id=position.id,
            message=(
                f"Closed {side} {signal.symbol}: pnl {closed.pnl:.2f} "
                f"({closed.pnl_percent:.2f}%)"
            ),
        )


def create_bulk_signals(db: Database, signals: list[dict[str, Any]]) -> dict[str, Any]:
    """Store a batch of unprocessed signals, collecting per-row errors."""
    created = 0
    errors: list[dict[str, Any]] = []
    for row, item in enumerate(signals):
        try:
            bot_id = item.get("botId") or item.get("bot_id")
            if not bot_id or db.get_bot(bot_id) is None:
                raise ValueError("Bot not found")
            symbol = str(item.get("symbol") or "").upper()
            if not symbol:
                raise ValueError("Symbol is required")
            price = item.get("price")
            db.insert_signal(SignalRecord(
                bot_id=bot_id,
                action=normalize_action(item.get("action") or ""),
                symbol=symbol,
                price=float(price) if price not in (None, "") else None,
                message=item.get("message"),
            ))
            created += 1
        except (InvalidActionError, ValueError, TypeError) as e:
            errors.append({"row": row, "error": str(e)})
    log.info("signal_processor.bulk_created", created=created, failed=len(errors))
    return {"created": created, "failed": len(errors), "errors": errors}
