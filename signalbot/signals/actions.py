"""Webhook action vocabulary and payload parsing.

TradingView alerts arrive either as a JSON object::

    {"action": "buy", "symbol": "btcusdt", "price": 50000,
     "botId": "...", "secret": "..."}

or as a compact text line::

    ENTER-LONG_BINANCE_BTCUSDT_optional_message

Free-text actions are folded onto the four canonical signal actions.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

ENTER_LONG = "ENTER_LONG"
EXIT_LONG = "EXIT_LONG"
ENTER_SHORT = "ENTER_SHORT"
EXIT_SHORT = "EXIT_SHORT"

SUPPORTED_ACTIONS = (ENTER_LONG, EXIT_LONG, ENTER_SHORT, EXIT_SHORT)

_ACTION_ALIASES: dict[str, str] = {
    "ENTER_LONG": ENTER_LONG,
    "ENTERLONG": ENTER_LONG,
    "LONG": ENTER_LONG,
    "BUY": ENTER_LONG,

    "EXIT_LONG": EXIT_LONG,
    "EXITLONG": EXIT_LONG,
    "CLOSE_LONG": EXIT_LONG,
    "CLOSELONG": EXIT_LONG,
    "SELL_LONG": EXIT_LONG,
    "SELL": EXIT_LONG,

    "ENTER_SHORT": ENTER_SHORT,
    "ENTERSHORT": ENTER_SHORT,
    "SHORT": ENTER_SHORT,

    "EXIT_SHORT": EXIT_SHORT,
    "EXITSHORT": EXIT_SHORT,
    "CLOSE_SHORT": EXIT_SHORT,
    "CLOSESHORT": EXIT_SHORT,
    "BUY_SHORT": EXIT_SHORT,
    "COVER": EXIT_SHORT,
}


class InvalidActionError(ValueError):
    """Action text does not map to a signal action."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Invalid signal action: {action}")


class PayloadError(ValueError):
    """Webhook body could not be parsed."""


def normalize_action(action: str) -> str:
    key = str(action).strip().upper().replace("-", "_")
    try:
        return _ACTION_ALIASES[key]
    except KeyError:
        raise InvalidActionError(action) from None


def action_side(action: str) -> str:
    """LONG or SHORT for a canonical action."""
    return "LONG" if action in (ENTER_LONG, EXIT_LONG) else "SHORT"


def is_entry(action: str) -> bool:
    return action in (ENTER_LONG, ENTER_SHORT)


def is_short(action: str) -> bool:
    return action in (ENTER_SHORT, EXIT_SHORT)


@dataclass
class ParsedPayload:
    """A webhook body reduced to the fields the processor needs."""
    action: str
    symbol: str
    price: float | None = None
    message: str | None = None
    exchange: str | None = None
    secret: str | None = None


def parse_text_payload(body: str) -> ParsedPayload:
    """Parse ``ACTION_EXCHANGE_SYMBOL[_message...]``."""
    parts = body.strip().split("_")
    if len(parts) < 3 or not all(parts[:3]):
        raise PayloadError(
            "Text payload must look like ACTION_EXCHANGE_SYMBOL[_MESSAGE]"
        )
    action = normalize_action(parts[0].replace("-", "_"))
    message = "_".join(parts[3:]) or None
    return ParsedPayload(
        action=action,
        exchange=parts[1].upper(),
        symbol=parts[2].upper(),
        message=message,
    )


def _coerce_price(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise PayloadError(f"Invalid price: {value!r}") from None
    return price if price > 0 else None


def parse_json_payload(data: dict[str, Any]) -> ParsedPayload:
    action = data.get("action")
    symbol = data.get("symbol")
    if not action or not symbol:
        raise PayloadError("Payload requires 'action' and 'symbol'")
    return ParsedPayload(
        action=normalize_action(action),
        symbol=str(symbol).upper(),
        price=_coerce_price(data.get("price")),
        message=data.get("message"),
        secret=data.get("secret"),
    )


def parse_webhook_body(raw: str | bytes) -> ParsedPayload:
    """Accept either a JSON object or the compact text form."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text or not text.strip():
        raise PayloadError("Empty webhook body")
    try:
        decoded = json.loads(text)
    except ValueError:
        return parse_text_payload(text)
    if isinstance(decoded, dict):
        return parse_json_payload(decoded)
    if isinstance(decoded, str):
        return parse_text_payload(decoded)
    raise PayloadError("Webhook body must be a JSON object or a text alert")


def masked_payload(payload: dict[str, Any]) -> str:
    """JSON-encode a payload with its secret hidden, for storage."""
    safe = dict(payload)
    if "secret" in safe:
        safe["secret"] = "***"
    return json.dumps(safe, default=str)
