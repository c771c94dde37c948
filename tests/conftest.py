"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure signalbot is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from signalbot.config import AppConfig, StorageConfig  # noqa: E402
from signalbot.connectors.binance_client import AssetBalance, SymbolInfo  # noqa: E402
from signalbot.observability.metrics import metrics  # noqa: E402
from signalbot.storage.database import Database  # noqa: E402
from signalbot.storage.models import BotRecord, ExchangeRecord, PortfolioRecord  # noqa: E402

WEBHOOK_SECRET = "supersecret123"


def symbol_info(
    symbol: str = "BTCUSDT",
    base: str = "BTC",
    quote: str = "USDT",
    margin: bool = True,
) -> SymbolInfo:
    return SymbolInfo(
        symbol=symbol,
        status="TRADING",
        base_asset=base,
        quote_asset=quote,
        is_spot_trading_allowed=True,
        is_margin_trading_allowed=margin,
        filters={
            "PRICE_FILTER": {"filterType": "PRICE_FILTER", "minPrice": "0.01",
                             "maxPrice": "1000000", "tickSize": "0.01"},
            "LOT_SIZE": {"filterType": "LOT_SIZE", "minQty": "0.00001",
                         "maxQty": "9000", "stepSize": "0.00001"},
            "NOTIONAL": {"filterType": "NOTIONAL", "minNotional": "5"},
        },
    )


def make_client(price: float = 50000.0, **overrides: Any) -> MagicMock:
    """AsyncMock-backed stand-in for BinanceClient."""
    client = MagicMock()
    client.get_symbol_info = AsyncMock(return_value=symbol_info())
    client.get_ticker_price = AsyncMock(return_value=price)
    client.get_ticker_prices = AsyncMock(return_value={})
    client.get_balances = AsyncMock(return_value=[
        AssetBalance("USDT", 100000.0, 0.0),
        AssetBalance("BTC", 1.0, 0.0),
    ])
    client.get_margin_account = AsyncMock(return_value={
        "totalNetAssetOfBtc": "0",
        "userAssets": [
            {"asset": "USDT", "netAsset": "1000"},
            {"asset": "BTC", "netAsset": "0.01"},
        ],
    })
    client.get_max_borrowable = AsyncMock(return_value=500.0)
    client.place_spot_order = AsyncMock()
    client.place_margin_order = AsyncMock()
    client.cancel_spot_order = AsyncMock(return_value={})
    client.cancel_margin_order = AsyncMock(return_value={})
    client.create_listen_key = AsyncMock(return_value="listen-key-1")
    client.keepalive_listen_key = AsyncMock()
    client.close_listen_key = AsyncMock()
    client.close = AsyncMock()
    for name, value in overrides.items():
        setattr(client, name, value)
    return client


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ENABLE_LIVE_TRADING", raising=False)
    monkeypatch.delenv("SIGNALBOT_API_KEY", raising=False)
    metrics.reset()


@pytest.fixture
def config() -> AppConfig:
    cfg = AppConfig()
    cfg.trading.close_all_delay_ms = 0
    cfg.execution.retry_backoff_secs = 0.0
    return cfg


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(StorageConfig(sqlite_path=str(tmp_path / "test.db")))
    database.connect()
    yield database
    database.close()


@pytest.fixture
def portfolio(db: Database) -> PortfolioRecord:
    pid = db.create_portfolio(PortfolioRecord(user_id="user-1", initial_balance=10000.0))
    record = db.get_portfolio(pid)
    assert record is not None
    return record


@pytest.fixture
def exchange(db: Database, portfolio: PortfolioRecord) -> ExchangeRecord:
    eid = db.create_exchange(ExchangeRecord(
        portfolio_id=portfolio.id,
        api_key="key",
        api_secret="secret",
        total_value=10000.0,
    ))
    record = db.get_exchange(eid)
    assert record is not None
    return record


@pytest.fixture
def bot(db: Database, portfolio: PortfolioRecord, exchange: ExchangeRecord) -> BotRecord:
    bid = db.create_bot(BotRecord(
        portfolio_id=portfolio.id,
        exchange_id=exchange.id,
        name="Trend bot",
        symbols=["BTCUSDT", "ETHUSDT"],
        position_percent=10.0,
        webhook_secret=WEBHOOK_SECRET,
    ))
    record = db.get_bot(bid)
    assert record is not None
    return record


@pytest.fixture
def client() -> MagicMock:
    return make_client()
