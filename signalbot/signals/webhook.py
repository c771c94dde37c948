"""Webhook intake: authenticate an alert, store it, process it.

Two entry points:
  - JSON webhook: the bot id and secret travel in the body
  - Per-bot webhook: the bot id is in the URL; JSON or text bodies

Both create a signal record and hand it straight to the signal
processor. Handlers return a status code and JSON body and know nothing
about the HTTP framework serving them.
"""

from __future__ import annotations

import hmac
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from signalbot.observability.logger import get_logger
from signalbot.observability.metrics import metrics
from signalbot.signals.actions import (
    SUPPORTED_ACTIONS,
    InvalidActionError,
    ParsedPayload,
    PayloadError,
    is_short,
    masked_payload,
    normalize_action,
    parse_json_payload,
    parse_webhook_body,
)
from signalbot.signals.processor import SignalProcessor
from signalbot.storage.database import Database
from signalbot.storage.models import BotRecord, ExchangeRecord, SignalRecord

log = get_logger(__name__)

PriceLookup = Callable[[ExchangeRecord, str], Awaitable[float]]

_REQUIRED_FIELDS = ("action", "symbol", "botId", "secret")

_SUPPORTED_HELP = [
    "ENTER_LONG (or BUY, LONG)",
    "EXIT_LONG (or SELL, CLOSE_LONG)",
    "ENTER_SHORT (or SHORT)",
    "EXIT_SHORT (or COVER, CLOSE_SHORT)",
]


@dataclass
class WebhookResult:
    status_code: int
    body: dict[str, Any]


def _secret_matches(expected: str, provided: Any) -> bool:
    if not expected or not isinstance(provided, str):
        return False
    return hmac.compare_digest(expected.encode(), provided.encode())


def _error(status: int, error: str, **extra: Any) -> WebhookResult:
    metrics.incr("webhooks.rejected", status=str(status))
    return WebhookResult(status, {"success": False, "error": error, **extra})


async def _resolve_price(
    exchange: ExchangeRecord,
    symbol: str,
    price: float | None,
    price_lookup: PriceLookup | None,
) -> float | None:
    if price and price > 0:
        return price
    if price_lookup is None:
        return None
    try:
        fetched = await price_lookup(exchange, symbol)
    except Exception as e:
        log.warning("webhook.price_lookup_failed", symbol=symbol, error=str(e))
        return None
    return fetched if fetched and fetched > 0 else None


def _coerce_price(value: Any) -> float | None:
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


async def handle_json_webhook(
    db: Database,
    payload: Any,
    processor: SignalProcessor,
    price_lookup: PriceLookup | None = None,
) -> WebhookResult:
    metrics.incr("webhooks.received", kind="json")
    if not isinstance(payload, dict):
        return _error(
            400, "Invalid JSON payload",
            details="Request body must be a JSON object",
            example={
                "action": "ENTER_LONG", "symbol": "BTCUSDT", "price": 50000,
                "botId": "your-bot-id", "secret": "your-webhook-secret",
            },
        )

    missing = [f for f in _REQUIRED_FIELDS if not payload.get(f)]
    if missing:
        return _error(400, f"Missing required field: {', '.join(missing)}", missing=missing)

    log.info("webhook.received", payload=masked_payload(payload))

    try:
        action = normalize_action(payload["action"])
    except InvalidActionError:
        return _error(
            400, "Invalid action",
            details=f'"{payload["action"]}" is not a valid action',
            supportedActions=_SUPPORTED_HELP,
        )
    symbol = str(payload["symbol"]).upper()

    bot = db.get_bot(str(payload["botId"]))
    if bot is None:
        return _error(404, "Bot not found", details="No bot exists with this ID.")
    if not _secret_matches(bot.webhook_secret, payload["secret"]):
        log.warning("webhook.invalid_secret", bot_id=bot.id)
        return _error(401, "Invalid webhook secret")
    if not bot.is_active:
        return _error(400, "Bot is not active")
    if bot.symbols and symbol not in bot.symbols:
        return _error(
            400, "Symbol not configured",
            details=f"Symbol {symbol} is not in the bot's allowed symbols",
            configuredSymbols=bot.symbols,
        )
    if bot.account_type == "SPOT" and is_short(action):
        return _error(
            400, "Invalid action for SPOT account",
            details="Shorting requires a MARGIN bot.",
            accountType="SPOT",
            suggestedActions=["ENTER_LONG", "EXIT_LONG"],
        )
    exchange = db.get_exchange(bot.exchange_id)
    if exchange is None or not exchange.is_active:
        return _error(400, "Exchange not active")

    price = await _resolve_price(exchange, symbol, _coerce_price(payload.get("price")), price_lookup)
    signal_id = db.insert_signal(SignalRecord(
        bot_id=bot.id,
        action=action,
        symbol=symbol,
        price=price,
        message=masked_payload(payload),
    ))
    log.info("webhook.signal_created", signal_id=signal_id, action=action, symbol=symbol, price=price)

    common = {"signalId": signal_id, "action": action, "symbol": symbol, "botName": bot.name}
    try:
        result = await processor.process(signal_id)
    except Exception as e:
        log.error("webhook.processing_failed", signal_id=signal_id, error=str(e))
        db.mark_signal_processed(signal_id, error=str(e))
        return _error(500, str(e) or "Processing failed", **common)

    if result.success:
        return WebhookResult(200, {
            "success": True,
            **common,
            "positionId": result.position_id,
            "price": price,
            "message": result.message or "Signal processed successfully",
        })
    return WebhookResult(200 if result.skipped else 400, {
        "success": False,
        **common,
        "error": result.error,
        "skipped": result.skipped,
        "skipReason": result.skip_reason,
    })


def _parse_bot_body(
    raw: str | bytes | dict[str, Any],
) -> tuple[ParsedPayload, dict[str, Any] | None]:
    """Parsed payload plus the decoded JSON object, if the body was one."""
    if isinstance(raw, dict):
        return parse_json_payload(raw), raw
    parsed = parse_webhook_body(raw)
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        decoded = json.loads(text)
    except ValueError:
        decoded = None
    return parsed, decoded if isinstance(decoded, dict) else None


async def handle_bot_webhook(
    db: Database,
    bot_id: str,
    raw_body: str | bytes | dict[str, Any],
    processor: SignalProcessor,
    price_lookup: PriceLookup | None = None,
) -> WebhookResult:
    metrics.incr("webhooks.received", kind="bot")
    try:
        bot = db.get_bot(bot_id)
        if bot is None:
            return _error(404, "Bot not found", code="WEBHOOK_INVALID_BOT")
        if not bot.is_active:
            return _error(403, "Bot is not active", code="WEBHOOK_BOT_INACTIVE")

        try:
            parsed, json_body = _parse_bot_body(raw_body)
        except (PayloadError, InvalidActionError) as e:
            return _error(400, str(e), code="WEBHOOK_INVALID_PAYLOAD")

        if json_body is not None and parsed.secret is not None and not _secret_matches(
            bot.webhook_secret, parsed.secret
        ):
            log.warning("webhook.invalid_secret", bot_id=bot.id)
            return _error(401, "Invalid webhook secret", code="WEBHOOK_INVALID_SECRET")
        if bot.symbols and parsed.symbol not in bot.symbols:
            return _error(
                400, f"Symbol {parsed.symbol} is not configured for this bot",
                code="WEBHOOK_INVALID_PAYLOAD",
            )

        exchange = db.get_exchange(bot.exchange_id)
        price = parsed.price
        if exchange is not None:
            price = await _resolve_price(exchange, parsed.symbol, parsed.price, price_lookup)

        message = masked_payload(json_body) if json_body is not None else parsed.message
        signal_id = db.insert_signal(SignalRecord(
            bot_id=bot.id,
            action=parsed.action,
            symbol=parsed.symbol,
            price=price,
            message=message,
        ))
        log.info("webhook.signal_created", signal_id=signal_id, bot_id=bot.id, action=parsed.action)

        try:
            result = await processor.process(signal_id)
        except Exception as e:
            log.error("webhook.processing_failed", signal_id=signal_id, error=str(e))
            db.mark_signal_processed(signal_id, error=str(e))
            return _error(
                500, str(e) or "Processing failed", code="WEBHOOK_PROCESSING_FAILED",
                signalId=signal_id, action=parsed.action, symbol=parsed.symbol,
            )
    except Exception as e:
        log.error("webhook.unexpected_error", bot_id=bot_id, error=str(e))
        return _error(500, str(e) or "Internal server error", code="WEBHOOK_PROCESSING_FAILED")

    common = {"signalId": signal_id, "action": parsed.action, "symbol": parsed.symbol}
    if result.success:
        return WebhookResult(200, {
            "success": True,
            "message": result.message or "Signal processed successfully",
            **common,
            "positionId": result.position_id,
        })
    if result.skipped:
        return WebhookResult(200, {
            "success": False,
            **common,
            "skipped": True,
            "skipReason": result.skip_reason,
        })
    return _error(500, result.error or "Processing failed", code="WEBHOOK_PROCESSING_FAILED", **common)


def _example_payload(bot: BotRecord, action: str) -> dict[str, Any]:
    return {
        "action": action,
        "symbol": bot.symbols[0] if bot.symbols else "BTCUSDT",
        "price": 50000 if "LONG" in action else 3000,
        "botId": bot.id,
        "secret": "<your-webhook-secret>",
    }


def webhook_info(db: Database, bot_id: str, base_url: str) -> WebhookResult:
    bot = db.get_bot(bot_id)
    if bot is None:
        return WebhookResult(404, {"error": "Bot not found"})

    endpoint = f"{base_url.rstrip('/')}/api/webhook/signal-bot"
    recent = db.list_signals(bot_id=bot.id, limit=10)
    win_rate = bot.win_trades / bot.total_trades * 100 if bot.total_trades > 0 else 0.0
    examples = {
        "enterLong": _example_payload(bot, "ENTER_LONG"),
        "exitLong": _example_payload(bot, "EXIT_LONG"),
        "enterShort": _example_payload(bot, "ENTER_SHORT"),
        "exitShort": _example_payload(bot, "EXIT_SHORT"),
    }
    return WebhookResult(200, {
        "botId": bot.id,
        "botName": bot.name,
        "isActive": bot.is_active,
        "webhookEndpoint": endpoint,
        "botWebhookEndpoint": f"{endpoint}/{bot.id}",
        "configuration": {
            "symbols": bot.symbols,
            "accountType": bot.account_type,
            "marginType": bot.margin_type,
            "sideEffectType": bot.side_effect_type,
            "orderType": bot.order_type,
            "portfolioPercent": bot.position_percent,
            "leverage": bot.leverage,
            "stopLoss": bot.stop_loss,
            "takeProfit": bot.take_profit,
        },
        "statistics": {
            "totalSignals": db.count_signals(bot.id),
            "totalPositions": db.count_bot_positions(bot.id),
            "totalTrades": bot.total_trades,
            "winTrades": bot.win_trades,
            "lossTrades": bot.loss_trades,
            "totalPnl": bot.total_pnl,
            "winRate": win_rate,
        },
        "recentSignals": [
            {
                "id": s.id,
                "action": s.action,
                "symbol": s.symbol,
                "price": s.price,
                "processed": s.processed,
                "hasError": bool(s.error),
                "error": s.error,
                "timestamp": s.created_at,
            }
            for s in recent
        ],
        "supportedActions": list(SUPPORTED_ACTIONS),
        "testingInfo": {
            "examplePayload": examples["enterLong"],
            "allExamples": examples,
            "textFormat": "ENTER-LONG_BINANCE_BTCUSDT_optional_message",
        },
    })
