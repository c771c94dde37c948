"""Order router: sends orders to Binance or simulates them.

In dry_run mode: logs the order and returns a synthetic FILLED response
shaped like Binance's FULL order response.
In live mode: submits to the spot or cross-margin endpoint by account type.

Enhancements:
  - Retry with exponential backoff on transport failures
  - Binance rejections (insufficient balance, bad filters) are not retried
  - Client order ids make retried submissions idempotent on the exchange
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from signalbot.config import ExecutionConfig, is_live_trading_enabled
from signalbot.connectors.binance_client import BinanceAPIError, BinanceClient
from signalbot.execution.order_builder import OrderSpec
from signalbot.observability.logger import get_logger
from signalbot.observability.metrics import metrics

log = get_logger(__name__)


def is_simulated(config: ExecutionConfig) -> bool:
    """Orders are simulated unless dry_run is off AND live trading is enabled."""
    return config.dry_run or not is_live_trading_enabled()


@dataclass
class OrderResult:
    """Result of order submission."""
    status: str          # "simulated" | "submitted" | "failed"
    response: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    error_code: int | None = None

    @property
    def success(self) -> bool:
        return self.status in ("simulated", "submitted")

    @property
    def order_id(self) -> str:
        return str(self.response.get("orderId", ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "order_id": self.order_id,
            "exchange_status": self.response.get("status", ""),
            "error": self.error,
            "error_code": self.error_code,
        }


_sim_order_seq = 0


def simulate_fill(order: OrderSpec) -> dict[str, Any]:
    """Synthesise a Binance FULL response for a dry-run order."""
    global _sim_order_seq
    _sim_order_seq += 1
    price = order.expected_price
    if order.quantity:
        qty = float(order.quantity)
    elif order.quote_order_qty and price > 0:
        qty = float(order.quote_order_qty) / price
    else:
        qty = 0.0
    conditional = order.order_type in ("STOP_LOSS", "TAKE_PROFIT")
    executed = 0.0 if conditional else qty
    quote = executed * price
    return {
        "symbol": order.symbol,
        "orderId": int(time.time() * 1000) * 1000 + _sim_order_seq % 1000,
        "clientOrderId": order.client_order_id,
        "transactTime": int(time.time() * 1000),
        "price": order.price or "0",
        "origQty": f"{qty:.8f}",
        "executedQty": f"{executed:.8f}",
        "cummulativeQuoteQty": f"{quote:.8f}",
        "status": "NEW" if conditional else "FILLED",
        "type": order.order_type,
        "side": order.side,
        "fills": [] if conditional else [{
            "price": f"{price:.8f}",
            "qty": f"{executed:.8f}",
            "commission": "0",
            "commissionAsset": "BNB",
        }],
    }


class OrderRouter:
    """Route orders to Binance or simulate them."""

    def __init__(self, client: BinanceClient, config: ExecutionConfig):
        self._client = client
        self._config = config

    @property
    def simulated(self) -> bool:
        return is_simulated(self._config)

    async def submit_order(self, order: OrderSpec) -> OrderResult:
        """Submit an order. Dry-run by default."""
        if self.simulated:
            log.info(
                "order_router.dry_run",
                symbol=order.symbol,
                side=order.side,
                type=order.order_type,
                account=order.account_type,
                quantity=order.quantity,
                quote_qty=order.quote_order_qty,
                client_order_id=order.client_order_id,
            )
            metrics.incr("orders.simulated")
            return OrderResult(status="simulated", response=simulate_fill(order))

        params = order.to_params()
        place = (
            self._client.place_margin_order
            if order.account_type == "MARGIN"
            else self._client.place_spot_order
        )

        last_error = ""
        max_retries = max(self._config.max_retries, 1)
        backoff = self._config.retry_backoff_secs

        for attempt in range(1, max_retries + 1):
            try:
                with metrics.timer("orders.latency_ms"):
                    resp = await place(**params)
                log.info(
                    "order_router.submitted",
                    symbol=order.symbol,
                    side=order.side,
                    type=order.order_type,
                    attempt=attempt,
                    order_id=resp.get("orderId"),
                    status=resp.get("status"),
                )
                metrics.incr("orders.submitted", account=order.account_type)
                return OrderResult(status="submitted", response=resp)

            except BinanceAPIError as e:
                log.error(
                    "order_router.rejected",
                    symbol=order.symbol,
                    code=e.code,
                    error=str(e),
                )
                metrics.incr("orders.failed")
                return OrderResult(status="failed", error=str(e), error_code=e.code)

            except httpx.TransportError as e:
                last_error = str(e) or e.__class__.__name__
                log.warning(
                    "order_router.retry",
                    symbol=order.symbol,
                    attempt=attempt,
                    max_retries=max_retries,
                    error=last_error,
                )
                if attempt < max_retries:
                    await asyncio.sleep(backoff * (2 ** (attempt - 1)))

        log.error("order_router.failed", symbol=order.symbol, error=last_error)
        metrics.incr("orders.failed")
        return OrderResult(status="failed", error=last_error or "Order submission failed")

    async def cancel_order(self, symbol: str, order_id: str, account_type: str) -> bool:
        """Cancel an open order. Unknown orders count as already gone."""
        if self.simulated:
            log.info("order_router.dry_run_cancel", symbol=symbol, order_id=order_id)
            return True
        cancel = (
            self._client.cancel_margin_order
            if account_type == "MARGIN"
            else self._client.cancel_spot_order
        )
        try:
            await cancel(symbol, order_id)
        except BinanceAPIError as e:
            if e.code == -2011:
                return True
            log.warning("order_router.cancel_failed", symbol=symbol, order_id=order_id, error=str(e))
            return False
        log.info("order_router.cancelled", symbol=symbol, order_id=order_id)
        return True
