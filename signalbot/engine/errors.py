"""Trading-path exceptions and their mapping to API status codes."""

from __future__ import annotations

from dataclasses import dataclass

from signalbot.connectors.binance_client import BinanceAPIError


class TradingError(Exception):
    """Base class for failures on the trading path."""


class ValidationError(TradingError):
    """A trade request failed pre-trade validation."""

    def __init__(self, errors: list[str] | str):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__(self.errors[0] if self.errors else "Validation failed")


class InsufficientBalanceError(ValidationError):
    pass


class InvalidSymbolError(ValidationError):
    pass


def validation_error(errors: list[str]) -> ValidationError:
    """Most specific ValidationError subclass for a list of messages."""
    lowered = [e.lower() for e in errors]
    if any("insufficient balance" in e for e in lowered):
        return InsufficientBalanceError(errors)
    if any("not found or not tradeable" in e for e in lowered):
        return InvalidSymbolError(errors)
    return ValidationError(errors)


_STATUS_BY_CATEGORY = {
    "INSUFFICIENT_BALANCE": 400,
    "INVALID_SYMBOL": 400,
    "VALIDATION_ERROR": 400,
    "EXCHANGE_ERROR": 502,
    "ORDER_ERROR": 502,
    "UNKNOWN_ERROR": 500,
}


@dataclass
class ErrorClassification:
    category: str
    status_code: int


def classify_error(exc: BaseException) -> ErrorClassification:
    """Bucket an exception into a category and HTTP status."""
    if isinstance(exc, InsufficientBalanceError):
        category = "INSUFFICIENT_BALANCE"
    elif isinstance(exc, BinanceAPIError):
        category = "INSUFFICIENT_BALANCE" if exc.code == -2010 else "EXCHANGE_ERROR"
    elif isinstance(exc, InvalidSymbolError):
        category = "INVALID_SYMBOL"
    elif isinstance(exc, ValidationError):
        refined = validation_error(exc.errors)
        if type(refined) is ValidationError:
            category = "VALIDATION_ERROR"
        else:
            category = classify_error(refined).category
    else:
        message = str(exc).lower()
        if "insufficient balance" in message or "insufficient funds" in message:
            category = "INSUFFICIENT_BALANCE"
        elif "invalid symbol" in message or "not configured" in message:
            category = "INVALID_SYMBOL"
        elif "exchange" in message or "binance" in message or "api" in message:
            category = "EXCHANGE_ERROR"
        elif "order" in message or "position" in message:
            category = "ORDER_ERROR"
        elif "validation" in message or "invalid" in message:
            category = "VALIDATION_ERROR"
        else:
            category = "UNKNOWN_ERROR"
    return ErrorClassification(category, _STATUS_BY_CATEGORY[category])
