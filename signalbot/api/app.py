"""HTTP API: Flask application for webhooks and account management.

Serves:
  - TradingView webhooks (JSON body or per-bot URL)
  - Portfolio statistics, history and positions
  - Manual trades and position closes
  - Signal bot management, signal listings and corrections
  - Order history per position or portfolio
  - Exchange valuation sync
  - Health and in-process metrics

Coroutines on the trading path run to completion inside each request.
Non-webhook routes require ``X-API-Key`` when ``SIGNALBOT_API_KEY`` is set.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import hmac
import os
from pathlib import Path
from typing import Any, Callable

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from signalbot.analytics.portfolio_stats import (
    aggregate_bot_stats,
    calculate_bot_stats,
    portfolio_history,
    recalculate_portfolio_stats,
)
from signalbot.analytics.valuation import sync_exchange
from signalbot.api.schemas import BotCreate, BotUpdate, SignalUpdate, validation_messages
from signalbot.config import AppConfig, is_live_trading_enabled, load_config
from signalbot.connectors.binance_client import BinanceClient, client_for_exchange
from signalbot.connectors.rate_limiter import rate_limiter
from signalbot.engine.position_manager import PositionManager
from signalbot.engine.trading_engine import TradingEngine
from signalbot.execution.order_builder import TradeRequest
from signalbot.observability.logger import configure_logging, get_logger
from signalbot.observability.metrics import metrics
from signalbot.observability.sentry_integration import init_sentry
from signalbot.signals.processor import SignalProcessor, create_bulk_signals
from signalbot.signals.webhook import handle_bot_webhook, handle_json_webhook, webhook_info
from signalbot.storage.database import Database
from signalbot.storage.models import BotRecord, ExchangeRecord

log = get_logger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

ClientFactory = Callable[[ExchangeRecord], BinanceClient]


def _run(coro: Any) -> Any:
    return asyncio.run(coro)


def _bot_to_dict(bot: BotRecord) -> dict[str, Any]:
    data = bot.model_dump(exclude={"webhook_secret"})
    data["has_webhook_secret"] = bool(bot.webhook_secret)
    return data


def _parse_time(value: str | None, default: dt.datetime) -> dt.datetime:
    if not value:
        return default
    parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)


def _parse_bool(value: str | None) -> bool | None:
    if value is None or value == "":
        return None
    return value.lower() in ("1", "true", "yes")


def _optional_float(data: dict[str, Any], key: str) -> float | None:
    value = data.get(key)
    return float(value) if value not in (None, "") else None


def create_app(
    config: AppConfig | None = None,
    database: Database | None = None,
    client_factory: ClientFactory | None = None,
) -> Flask:
    """Build the API app.

    An injected database is shared across requests; otherwise each request
    opens its own connection to the configured SQLite file.
    """
    cfg = config or load_config()
    make_client: ClientFactory = client_factory or (
        lambda exchange: client_for_exchange(exchange, cfg.binance)
    )
    app = Flask(__name__)
    app.config["SIGNALBOT"] = cfg
    api_key = os.environ.get("SIGNALBOT_API_KEY", "")

    def get_db() -> Database:
        if database is not None:
            return database
        if "db" not in g:
            g.db = Database(cfg.storage)
            g.db.connect()
        return g.db

    @app.teardown_appcontext
    def _close_db(exc: BaseException | None) -> None:
        db = g.pop("db", None)
        if db is not None:
            db.close()

    @app.before_request
    def _require_auth() -> Any:
        if not api_key:
            return None
        if request.path in ("/health", "/ready") or request.path.startswith("/api/webhook/"):
            return None
        token = request.headers.get("X-API-Key") or ""
        if not hmac.compare_digest(token.encode(), api_key.encode()):
            return jsonify({"error": "unauthorized", "message": "Set X-API-Key header"}), 401
        return None

    @app.errorhandler(Exception)
    def _unhandled(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description}), exc.code
        log.error("api.unhandled_error", path=request.path, error=str(exc), error_type=type(exc).__name__)
        return jsonify({"error": "Internal server error", "details": str(exc)}), 500

    def processor() -> SignalProcessor:
        return SignalProcessor(get_db(), cfg, make_client)

    async def price_lookup(exchange: ExchangeRecord, symbol: str) -> float:
        client = make_client(exchange)
        try:
            return await client.get_ticker_price(symbol)
        finally:
            await client.close()

    # ── Health & Metrics ─────────────────────────────────────────────

    @app.route("/health")
    def health() -> Any:
        return jsonify({"status": "ok", "service": "signalbot"})

    @app.route("/ready")
    def ready() -> Any:
        checks: dict[str, Any] = {"db": False}
        try:
            get_db().conn.execute("SELECT 1").fetchone()
            checks["db"] = True
        except Exception as e:
            checks["db_error"] = str(e)
        checks["live_trading"] = is_live_trading_enabled() and not cfg.execution.dry_run
        status = 200 if checks["db"] else 503
        return jsonify({"status": "ready" if checks["db"] else "not_ready", "checks": checks}), status

    @app.route("/api/metrics")
    def api_metrics() -> Any:
        snapshot = metrics.snapshot()
        snapshot["rate_limiter"] = rate_limiter.stats()
        return jsonify(snapshot)

    # ── Webhooks ─────────────────────────────────────────────────────

    @app.route("/api/webhook/signal-bot", methods=["POST"])
    def webhook_json() -> Any:
        payload = request.get_json(silent=True)
        with metrics.timer("webhooks.latency_ms"):
            result = _run(handle_json_webhook(get_db(), payload, processor(), price_lookup))
        return jsonify(result.body), result.status_code

    @app.route("/api/webhook/signal-bot", methods=["GET"])
    def webhook_get_info() -> Any:
        bot_id = request.args.get("botId")
        if not bot_id:
            return jsonify({"error": "Bot ID is required in query params"}), 400
        result = webhook_info(get_db(), bot_id, cfg.webhook.public_base_url)
        return jsonify(result.body), result.status_code

    @app.route("/api/webhook/signal-bot/<bot_id>", methods=["POST"])
    def webhook_bot(bot_id: str) -> Any:
        body: Any = request.get_json(silent=True) if request.is_json else None
        if not isinstance(body, dict):
            body = request.get_data(as_text=True)
        with metrics.timer("webhooks.latency_ms"):
            result = _run(handle_bot_webhook(get_db(), bot_id, body, processor(), price_lookup))
        return jsonify(result.body), result.status_code

    # ── Portfolios ───────────────────────────────────────────────────

    @app.route("/api/portfolios/<portfolio_id>")
    def get_portfolio(portfolio_id: str) -> Any:
        portfolio = get_db().get_portfolio(portfolio_id)
        if portfolio is None:
            return jsonify({"error": "Portfolio not found"}), 404
        return jsonify(portfolio.model_dump())

    @app.route("/api/portfolios/<portfolio_id>/recalculate", methods=["POST"])
    def recalculate(portfolio_id: str) -> Any:
        db = get_db()
        if db.get_portfolio(portfolio_id) is None:
            return jsonify({"error": "Portfolio not found"}), 404
        stats = recalculate_portfolio_stats(db, portfolio_id)
        return jsonify({"success": True, "stats": stats.to_dict()})

    @app.route("/api/portfolios/<portfolio_id>/history")
    def history(portfolio_id: str) -> Any:
        db = get_db()
        if db.get_portfolio(portfolio_id) is None:
            return jsonify({"error": "Portfolio not found"}), 404
        try:
            end = _parse_time(request.args.get("to"), dt.datetime.now(dt.timezone.utc))
            start = _parse_time(request.args.get("from"), end - dt.timedelta(days=30))
        except ValueError:
            return jsonify({"error": "from/to must be ISO-8601 timestamps"}), 400
        points = portfolio_history(db, portfolio_id, start, end)
        return jsonify({"portfolioId": portfolio_id, "data": points})

    @app.route("/api/portfolios/<portfolio_id>/positions")
    def list_positions(portfolio_id: str) -> Any:
        status = request.args.get("status")
        statuses = [s.strip().upper() for s in status.split(",")] if status else None
        positions = get_db().list_positions(portfolio_id, statuses=statuses)
        return jsonify({"positions": [p.model_dump() for p in positions], "count": len(positions)})

    @app.route("/api/portfolios/<portfolio_id>/close-all", methods=["POST"])
    def close_all(portfolio_id: str) -> Any:
        manager = PositionManager(get_db(), cfg, make_client)
        summary = _run(manager.close_all_positions(portfolio_id))
        return jsonify(summary.to_dict())

    @app.route("/api/portfolios/<portfolio_id>/orders")
    def list_portfolio_orders(portfolio_id: str) -> Any:
        try:
            limit = min(int(request.args.get("limit", 100)), 1000)
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        db = get_db()
        if db.get_portfolio(portfolio_id) is None:
            return jsonify({"error": "Portfolio not found"}), 404
        orders = db.list_orders(portfolio_id, symbol=request.args.get("symbol"), limit=limit)
        return jsonify({"orders": [o.model_dump() for o in orders], "count": len(orders)})

    # ── Positions & Trades ───────────────────────────────────────────

    @app.route("/api/positions/<position_id>/orders")
    def list_position_orders(position_id: str) -> Any:
        db = get_db()
        if db.get_position(position_id) is None:
            return jsonify({"error": "Position not found"}), 404
        orders = db.get_orders_for_position(position_id)
        return jsonify({"orders": [o.model_dump() for o in orders], "count": len(orders)})

    @app.route("/api/positions/<position_id>/close", methods=["POST"])
    def close_position(position_id: str) -> Any:
        data = request.get_json(silent=True) or {}
        manager = PositionManager(get_db(), cfg, make_client)
        result = _run(manager.close_position(position_id, data.get("sideEffectType")))
        if result.success:
            return jsonify(result.to_dict())
        status = 404 if result.error == "Position not found" else 400
        return jsonify(result.to_dict()), status

    @app.route("/api/trades", methods=["POST"])
    def create_trade() -> Any:
        data = request.get_json(silent=True) or {}
        portfolio_id = data.get("portfolioId")
        symbol = data.get("symbol")
        if not portfolio_id or not symbol:
            return jsonify({"success": False, "error": "portfolioId and symbol are required"}), 400
        db = get_db()
        exchange = db.get_active_exchange(portfolio_id)
        if exchange is None:
            return jsonify({"success": False, "error": "No active exchange found"}), 400
        try:
            trade = TradeRequest(
                portfolio_id=portfolio_id,
                exchange=exchange,
                symbol=str(symbol),
                order_type=str(data.get("type") or cfg.trading.default_order_type),
                account_type=str(data.get("accountType") or "SPOT"),
                source="MANUAL",
                action=data.get("action"),
                side=data.get("side"),
                quantity=_optional_float(data, "quantity"),
                quote_order_qty=_optional_float(data, "quoteOrderQty"),
                price=_optional_float(data, "price"),
                side_effect_type=data.get("sideEffectType"),
                time_in_force=data.get("timeInForce"),
                stop_loss=_optional_float(data, "stopLoss"),
                take_profit=_optional_float(data, "takeProfit"),
            )
        except (TypeError, ValueError) as e:
            return jsonify({"success": False, "error": f"Invalid trade input: {e}"}), 400

        async def execute() -> Any:
            client = make_client(exchange)
            try:
                return await TradingEngine(db, client, cfg).execute(trade)
            finally:
                await client.close()

        result = _run(execute())
        return jsonify(result.to_dict()), (200 if result.success else result.status_code)

    # ── Bots ─────────────────────────────────────────────────────────

    @app.route("/api/bots", methods=["GET"])
    def list_bots() -> Any:
        active = _parse_bool(request.args.get("isActive"))
        bots = get_db().list_bots(request.args.get("portfolioId"), is_active=active)
        return jsonify({"bots": [_bot_to_dict(b) for b in bots]})

    @app.route("/api/bots", methods=["POST"])
    def create_bot() -> Any:
        try:
            payload = BotCreate.model_validate(request.get_json(silent=True) or {})
        except ValidationError as e:
            return jsonify({"error": "Invalid bot configuration", "fields": validation_messages(e)}), 400
        db = get_db()
        exchange = db.get_exchange(payload.exchange_id)
        if db.get_portfolio(payload.portfolio_id) is None:
            return jsonify({"error": "Portfolio not found"}), 404
        if exchange is None or exchange.portfolio_id != payload.portfolio_id:
            return jsonify({"error": "Exchange not found for this portfolio"}), 404
        bot_id = db.create_bot(BotRecord(**payload.model_dump()))
        log.info("api.bot_created", bot_id=bot_id, portfolio_id=payload.portfolio_id)
        bot = db.get_bot(bot_id)
        if bot is None:
            return jsonify({"error": "Bot could not be read back"}), 500
        return jsonify(_bot_to_dict(bot)), 201

    @app.route("/api/bots/stats")
    def bots_stats() -> Any:
        bots = get_db().list_bots(request.args.get("portfolioId"))
        return jsonify(aggregate_bot_stats(bots))

    @app.route("/api/bots/<bot_id>", methods=["GET"])
    def get_bot(bot_id: str) -> Any:
        db = get_db()
        bot = db.get_bot(bot_id)
        if bot is None:
            return jsonify({"error": "Bot not found"}), 404
        data = _bot_to_dict(bot)
        data["performance"] = calculate_bot_stats(db.list_bot_positions(bot_id)).to_dict()
        return jsonify(data)

    @app.route("/api/bots/<bot_id>", methods=["PATCH"])
    def update_bot(bot_id: str) -> Any:
        db = get_db()
        if db.get_bot(bot_id) is None:
            return jsonify({"error": "Bot not found"}), 404
        try:
            changes = BotUpdate.model_validate(request.get_json(silent=True) or {}).changes()
        except ValidationError as e:
            return jsonify({"error": "Invalid bot configuration", "fields": validation_messages(e)}), 400
        db.update_bot(bot_id, **changes)
        bot = db.get_bot(bot_id)
        if bot is None:
            return jsonify({"error": "Bot not found"}), 404
        return jsonify(_bot_to_dict(bot))

    @app.route("/api/bots/<bot_id>/toggle", methods=["POST"])
    def toggle_bot(bot_id: str) -> Any:
        db = get_db()
        bot = db.get_bot(bot_id)
        if bot is None:
            return jsonify({"error": "Bot not found"}), 404
        data = request.get_json(silent=True) or {}
        active = bool(data["isActive"]) if "isActive" in data else not bot.is_active
        db.update_bot(bot_id, is_active=active)
        log.info("api.bot_toggled", bot_id=bot_id, is_active=active)
        return jsonify({"id": bot_id, "isActive": active})

    @app.route("/api/bots/<bot_id>", methods=["DELETE"])
    def delete_bot(bot_id: str) -> Any:
        if not get_db().delete_bot(bot_id):
            return jsonify({"error": "Bot not found"}), 404
        return jsonify({"success": True, "id": bot_id})

    # ── Signals ──────────────────────────────────────────────────────

    @app.route("/api/signals")
    def list_signals() -> Any:
        try:
            limit = min(int(request.args.get("limit", 100)), 1000)
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        signals = get_db().list_signals(
            bot_id=request.args.get("botId"),
            processed=_parse_bool(request.args.get("processed")),
            limit=limit,
        )
        return jsonify({"signals": [s.model_dump() for s in signals]})

    @app.route("/api/signals/bulk", methods=["POST"])
    def bulk_signals() -> Any:
        data = request.get_json(silent=True) or {}
        signals = data.get("signals")
        if not isinstance(signals, list) or not signals:
            return jsonify({"error": "signals must be a non-empty list"}), 400
        return jsonify(create_bulk_signals(get_db(), signals))

    @app.route("/api/signals/<signal_id>", methods=["PATCH"])
    def update_signal(signal_id: str) -> Any:
        db = get_db()
        if db.get_signal(signal_id) is None:
            return jsonify({"error": "Signal not found"}), 404
        try:
            changes = SignalUpdate.model_validate(request.get_json(silent=True) or {}).changes()
        except ValidationError as e:
            return jsonify({"error": "Invalid signal update", "fields": validation_messages(e)}), 400
        db.update_signal(signal_id, **changes)
        log.info("api.signal_updated", signal_id=signal_id, fields=sorted(changes))
        signal = db.get_signal(signal_id)
        if signal is None:
            return jsonify({"error": "Signal not found"}), 404
        return jsonify(signal.model_dump())

    @app.route("/api/signals/<signal_id>", methods=["DELETE"])
    def delete_signal(signal_id: str) -> Any:
        if not get_db().delete_signal(signal_id):
            return jsonify({"error": "Signal not found"}), 404
        log.info("api.signal_deleted", signal_id=signal_id)
        return jsonify({"success": True, "id": signal_id})

    # ── Exchanges ────────────────────────────────────────────────────

    @app.route("/api/exchanges/<exchange_id>/sync", methods=["POST"])
    def sync(exchange_id: str) -> Any:
        db = get_db()
        exchange = db.get_exchange(exchange_id)
        if exchange is None:
            return jsonify({"error": "Exchange not found"}), 404
        if not exchange.is_active:
            return jsonify({"error": "Exchange is not active"}), 400

        async def run_sync() -> Any:
            client = make_client(exchange)
            try:
                return await sync_exchange(db, exchange_id, client)
            finally:
                await client.close()

        value = _run(run_sync())
        return jsonify({"success": True, "exchangeId": exchange_id, **value.to_dict()})

    return app


def run_api(
    config_path: str | None = None,
    host: str | None = None,
    port: int | None = None,
    debug: bool = False,
) -> None:
    """Start the API server."""
    load_dotenv(_PROJECT_ROOT / ".env")
    cfg = load_config(config_path)
    configure_logging(
        level=cfg.observability.log_level,
        fmt=cfg.observability.log_format,
        log_file=cfg.observability.log_file,
    )
    init_sentry()

    db = Database(cfg.storage)
    db.connect()
    db.close()

    app = create_app(cfg)
    log.info(
        "api.starting",
        host=host or cfg.webhook.host,
        port=port or cfg.webhook.port,
        dry_run=cfg.execution.dry_run,
        live_trading=is_live_trading_enabled(),
    )
    app.run(host=host or cfg.webhook.host, port=port or cfg.webhook.port, debug=debug)
