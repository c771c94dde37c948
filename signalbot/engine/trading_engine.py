"""Trading engine: the single path for manual and signal-bot trades.

Pipeline per trade:
  1. Normalise the request (side, order type, side effect)
  2. Validate against symbol rules, bot limits and balances
  3. Size the order and derive SL/TP price levels
  4. Record a PENDING position
  5. Submit through the order router (rolled back on failure)
  6. Reconcile the fill into position and order rows
  7. Place exchange-side protective orders
  8. Recalculate portfolio statistics
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from signalbot.analytics.portfolio_stats import safe_recalculate
from signalbot.config import AppConfig
from signalbot.connectors.binance_client import BinanceAPIError, BinanceClient
from signalbot.engine.errors import ValidationError, classify_error, validation_error
from signalbot.execution.fill_tracker import reconcile_entry
from signalbot.execution.order_builder import (
    TradeRequest,
    build_entry_order,
    normalize_request,
    position_side_for,
)
from signalbot.execution.order_router import OrderRouter
from signalbot.execution.protective_orders import place_protective_orders
from signalbot.observability.logger import get_logger
from signalbot.observability.metrics import metrics
from signalbot.policy.position_sizer import calculate_trade_params
from signalbot.policy.risk_limits import validate_trade_request
from signalbot.storage.database import Database
from signalbot.storage.models import PositionRecord

log = get_logger(__name__)


@dataclass
class TradeResult:
    """Outcome of one trade request."""
    success: bool
    position_id: str | None = None
    order_id: str | None = None
    status: str | None = None
    executed_qty: float = 0.0
    executed_price: float = 0.0
    error: str | None = None
    error_category: str | None = None
    status_code: int = 200
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def failure(cls, exc: BaseException, errors: list[str] | None = None) -> TradeResult:
        classification = classify_error(exc)
        return cls(
            success=False,
            error=str(exc),
            error_category=classification.category,
            status_code=classification.status_code,
            errors=errors or [str(exc)],
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success}
        if self.success:
            d.update({
                "positionId": self.position_id,
                "orderId": self.order_id,
                "status": self.status,
                "executedQty": self.executed_qty,
                "executedPrice": self.executed_price,
            })
            if self.warnings:
                d["warnings"] = self.warnings
        else:
            d.update({
                "error": self.error,
                "category": self.error_category,
                "errors": self.errors,
            })
        return d


class TradingEngine:
    """Executes trades against one exchange account."""

    def __init__(
        self,
        db: Database,
        client: BinanceClient,
        config: AppConfig,
        router: OrderRouter | None = None,
    ):
        self._db = db
        self._client = client
        self._config = config
        self._router = router or OrderRouter(client, config.execution)

    @property
    def router(self) -> OrderRouter:
        return self._router

    async def execute(self, request: TradeRequest) -> TradeResult:
        try:
            request = normalize_request(request)
        except ValidationError as e:
            return TradeResult.failure(e)

        log.info(
            "trading_engine.request",
            symbol=request.symbol,
            side=request.side,
            type=request.order_type,
            account=request.account_type,
            source=request.source,
            bot_id=request.bot_id,
        )

        position_id: str | None = None
        try:
            validation = await validate_trade_request(
                self._db,
                self._client,
                request,
                check_balance=not self._router.simulated,
            )
            if not validation.is_valid:
                raise validation_error(validation.errors)

            params = calculate_trade_params(
                side=request.side or "BUY",
                order_type=request.order_type,
                current_price=validation.data.current_price,
                filters=validation.data.filters,
                quantity=request.quantity,
                quote_order_qty=request.quote_order_qty,
                limit_price=request.price,
                stop_loss_percent=request.stop_loss,
                take_profit_percent=request.take_profit,
            )

            position_side = position_side_for(request.side or "BUY")
            position = PositionRecord(
                portfolio_id=request.portfolio_id,
                bot_id=request.bot_id,
                symbol=request.symbol,
                side=position_side,
                type=request.order_type,
                account_type=request.account_type,
                margin_type="CROSS" if request.account_type == "MARGIN" else None,
                side_effect_type=request.side_effect_type or "NO_SIDE_EFFECT",
                source=request.source,
                status="PENDING",
                entry_price=params.expected_price,
                quantity=params.estimated_quantity,
                entry_value=params.estimated_quantity * params.expected_price,
            )
            position_id = self._db.insert_position(position)
            position.id = position_id

            order = build_entry_order(request, params)
            submitted = await self._router.submit_order(order)
            if not submitted.success:
                self._rollback(position_id)
                position_id = None
                raise BinanceAPIError(submitted.error_code, submitted.error or "Order failed")

            position = reconcile_entry(
                self._db,
                position,
                order,
                submitted.response,
                suffixes=self._config.trading.base_asset_suffixes,
                stop_loss=params.stop_loss_price,
                take_profit=params.take_profit_price,
            )

            warnings: list[str] = []
            if position.status == "OPEN" and (position.stop_loss or position.take_profit):
                protective = await place_protective_orders(self._db, self._router, position)
                warnings = protective.warnings

            safe_recalculate(self._db, request.portfolio_id)
            metrics.incr("trades.executed", source=request.source)
            log.info(
                "trading_engine.executed",
                position_id=position.id,
                symbol=position.symbol,
                status=position.status,
                quantity=position.quantity,
                entry_price=round(position.entry_price, 8),
            )
            return TradeResult(
                success=True,
                position_id=position.id,
                order_id=submitted.order_id,
                status=position.status,
                executed_qty=position.quantity,
                executed_price=position.entry_price,
                warnings=warnings,
            )

        except ValidationError as e:
            if position_id:
                self._rollback(position_id)
            metrics.incr("trades.rejected")
            return TradeResult.failure(e, errors=e.errors)
        except Exception as e:
            if position_id:
                self._rollback(position_id)
            metrics.incr("trades.failed")
            log.error(
                "trading_engine.failed",
                symbol=request.symbol,
                error=str(e),
                error_type=type(e).__name__,
            )
            return TradeResult.failure(e)

    def _rollback(self, position_id: str) -> None:
        self._db.delete_position(position_id)
        log.info("trading_engine.rolled_back", position_id=position_id)
