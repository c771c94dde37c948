"""Binance REST connector.

Handles:
  - Public market data (ticker prices, exchange info / symbol filters)
  - Signed account endpoints (spot balances, margin account, max borrowable)
  - Spot and cross-margin order placement and cancellation
  - User-data stream listen keys

Requests are HMAC-SHA256 signed. Read endpoints retry on transport
errors; order endpoints do not retry here (the order router owns that).
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from signalbot.config import BinanceConfig
from signalbot.connectors.rate_limiter import endpoint_weight, rate_limiter
from signalbot.observability.logger import get_logger

log = get_logger(__name__)


# ── Errors ───────────────────────────────────────────────────────────

_ERROR_MESSAGES: dict[int, str] = {
    # Authentication
    -1022: "Invalid API key or signature",
    -2015: "Invalid API key, IP, or permissions for action",
    # Orders
    -1013: "Invalid quantity - check symbol filters",
    -1111: "Precision is over the maximum defined for this asset",
    -2010: "Insufficient balance",
    -2011: "Unknown order",
    # OCO
    -1130: "Invalid data sent for OCO order",
    -1131: "Invalid listClientOrderId",
    -1107: "Mandatory parameter was not sent, was empty/null, or malformed",
    # Symbols
    -1121: "Invalid symbol",
    # Rate limits
    -1003: "Too many requests - rate limit exceeded",
    -1015: "Too many new orders - rate limit exceeded",
    -1104: "Not all sent parameters were read",
}


def map_error_code(code: int | None, original_msg: str = "") -> str:
    """Translate a Binance error code into a readable message."""
    if code is not None and code in _ERROR_MESSAGES:
        return _ERROR_MESSAGES[code]
    return original_msg or "Binance API error"


class BinanceAPIError(Exception):
    """Non-2xx response from Binance."""

    def __init__(self, code: int | None, msg: str, status: int = 0):
        self.code = code
        self.raw_msg = msg
        self.status = status
        super().__init__(map_error_code(code, msg))


# ── Data Models ──────────────────────────────────────────────────────

@dataclass
class SymbolInfo:
    """Trading rules for one symbol from /api/v3/exchangeInfo."""
    symbol: str
    status: str
    base_asset: str
    quote_asset: str
    is_spot_trading_allowed: bool = True
    is_margin_trading_allowed: bool = False
    filters: dict[str, dict[str, Any]] = field(default_factory=dict)

    def filter(self, filter_type: str) -> dict[str, Any]:
        return self.filters.get(filter_type, {})

    @property
    def price_filter(self) -> dict[str, Any]:
        return self.filter("PRICE_FILTER")

    @property
    def lot_size_filter(self) -> dict[str, Any]:
        return self.filter("LOT_SIZE")

    @property
    def min_notional_filter(self) -> dict[str, Any]:
        return self.filter("MIN_NOTIONAL") or self.filter("NOTIONAL")


@dataclass
class AssetBalance:
    asset: str
    free: float
    locked: float

    @property
    def total(self) -> float:
        return self.free + self.locked


# ── Client ───────────────────────────────────────────────────────────

class BinanceClient:
    """Async client for the Binance spot and margin REST APIs."""

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        config: BinanceConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._config = config or BinanceConfig()
        self._api_key = api_key
        self._api_secret = api_secret.encode()
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url.rstrip("/"),
            timeout=self._config.timeout_secs,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BinanceClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── Transport ────────────────────────────────────────────────────

    def _sign(self, params: dict[str, Any]) -> dict[str, Any]:
        signed = {k: v for k, v in params.items() if v is not None}
        signed["timestamp"] = int(time.time() * 1000)
        signed["recvWindow"] = self._config.recv_window
        query = urlencode(signed)
        signed["signature"] = hmac.new(
            self._api_secret, query.encode(), hashlib.sha256
        ).hexdigest()
        return signed

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        signed: bool = False,
        keyed: bool = False,
        category: str = "binance_market",
    ) -> Any:
        params = {k: v for k, v in (params or {}).items() if v is not None}
        await rate_limiter.get(category).acquire(endpoint_weight(path, batch="symbols" in params))
        headers: dict[str, str] = {}
        if signed:
            params = self._sign(params)
        if signed or keyed:
            headers["X-MBX-APIKEY"] = self._api_key

        resp = await self._client.request(method, path, params=params, headers=headers)
        if resp.status_code >= 400:
            code: int | None = None
            msg = resp.text
            try:
                body = resp.json()
                code = body.get("code")
                msg = body.get("msg", msg)
            except ValueError:
                pass
            log.warning(
                "binance.api_error",
                path=path,
                status=resp.status_code,
                code=code,
                msg=msg[:200],
            )
            raise BinanceAPIError(code, msg, resp.status_code)
        return resp.json() if resp.content else {}

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def _get(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        signed: bool = False,
        category: str = "binance_market",
    ) -> Any:
        return await self._send("GET", path, params, signed=signed, category=category)

    # ── Market data ──────────────────────────────────────────────────

    async def get_ticker_price(self, symbol: str) -> float:
        data = await self._get("/api/v3/ticker/price", {"symbol": symbol.upper()})
        return float(data.get("price", 0))

    async def get_ticker_prices(self, symbols: list[str]) -> dict[str, float]:
        """Batch price lookup. Binance rejects the whole batch on one bad symbol."""
        if not symbols:
            return {}
        data = await self._get(
            "/api/v3/ticker/price",
            {"symbols": json.dumps(sorted(set(symbols)), separators=(",", ":"))},
        )
        return {p["symbol"]: float(p["price"]) for p in data if "price" in p}

    async def get_symbol_info(self, symbol: str) -> SymbolInfo | None:
        try:
            data = await self._get("/api/v3/exchangeInfo", {"symbol": symbol.upper()})
        except BinanceAPIError as e:
            if e.code == -1121:
                return None
            raise
        symbols = data.get("symbols", [])
        return parse_symbol_info(symbols[0]) if symbols else None

    # ── Account ──────────────────────────────────────────────────────

    async def get_balances(self) -> list[AssetBalance]:
        data = await self._get(
            "/api/v3/account",
            {"omitZeroBalances": "true"},
            signed=True,
            category="binance_account",
        )
        return [
            AssetBalance(
                asset=b["asset"],
                free=float(b.get("free", 0)),
                locked=float(b.get("locked", 0)),
            )
            for b in data.get("balances", [])
        ]

    async def get_margin_account(self) -> dict[str, Any]:
        return await self._get(
            "/sapi/v1/margin/account", signed=True, category="binance_account",
        )

    async def get_max_borrowable(self, asset: str) -> float:
        data = await self._get(
            "/sapi/v1/margin/maxBorrowable",
            {"asset": asset},
            signed=True,
            category="binance_account",
        )
        return float(data.get("amount", 0))

    # ── Orders ───────────────────────────────────────────────────────

    async def place_spot_order(self, **params: Any) -> dict[str, Any]:
        params.setdefault("newOrderRespType", "FULL")
        return await self._send(
            "POST", "/api/v3/order", params, signed=True, category="binance_orders",
        )

    async def place_margin_order(self, **params: Any) -> dict[str, Any]:
        params.setdefault("newOrderRespType", "FULL")
        return await self._send(
            "POST", "/sapi/v1/margin/order", params, signed=True, category="binance_orders",
        )

    async def cancel_spot_order(self, symbol: str, order_id: str) -> dict[str, Any]:
        return await self._send(
            "DELETE", "/api/v3/order",
            {"symbol": symbol, "orderId": order_id},
            signed=True, category="binance_orders",
        )

    async def cancel_margin_order(self, symbol: str, order_id: str) -> dict[str, Any]:
        return await self._send(
            "DELETE", "/sapi/v1/margin/order",
            {"symbol": symbol, "orderId": order_id},
            signed=True, category="binance_orders",
        )

    # ── User data stream ─────────────────────────────────────────────

    async def create_listen_key(self) -> str:
        data = await self._send(
            "POST", "/api/v3/userDataStream", keyed=True, category="binance_stream",
        )
        return data["listenKey"]

    async def keepalive_listen_key(self, listen_key: str) -> None:
        await self._send(
            "PUT", "/api/v3/userDataStream",
            {"listenKey": listen_key}, keyed=True, category="binance_stream",
        )

    async def close_listen_key(self, listen_key: str) -> None:
        await self._send(
            "DELETE", "/api/v3/userDataStream",
            {"listenKey": listen_key}, keyed=True, category="binance_stream",
        )


# ── Parsing helpers ──────────────────────────────────────────────────

def parse_symbol_info(data: dict[str, Any]) -> SymbolInfo:
    """Parse one entry of exchangeInfo ``symbols`` into a SymbolInfo."""
    return SymbolInfo(
        symbol=data.get("symbol", ""),
        status=data.get("status", ""),
        base_asset=data.get("baseAsset", ""),
        quote_asset=data.get("quoteAsset", ""),
        is_spot_trading_allowed=bool(data.get("isSpotTradingAllowed", True)),
        is_margin_trading_allowed=bool(data.get("isMarginTradingAllowed", False)),
        filters={f["filterType"]: f for f in data.get("filters", []) if "filterType" in f},
    )


def client_for_exchange(exchange: Any, config: BinanceConfig | None = None) -> BinanceClient:
    """Build a client from a stored exchange record's credentials."""
    return BinanceClient(
        api_key=exchange.api_key,
        api_secret=exchange.api_secret,
        config=config,
    )
