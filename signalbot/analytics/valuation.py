"""Exchange valuation: USD value of a Binance account.

Spot balances in stablecoins count at face value; other assets are priced
through their USDT ticker. The cross-margin account reports its net asset
in BTC, converted through BTCUSDT.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from signalbot.connectors.binance_client import BinanceAPIError, BinanceClient
from signalbot.observability.logger import get_logger
from signalbot.storage.database import Database
from signalbot.storage.models import utc_now_iso

log = get_logger(__name__)

STABLECOINS = ("USDT", "BUSD", "USD")


@dataclass
class AccountValue:
    spot_value: float = 0.0
    margin_value: float = 0.0

    @property
    def total_value(self) -> float:
        return self.spot_value + self.margin_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "spotValue": round(self.spot_value, 2),
            "marginValue": round(self.margin_value, 2),
            "totalValue": round(self.total_value, 2),
        }


async def _usdt_prices(client: BinanceClient, symbols: list[str]) -> dict[str, float]:
    """Batch lookup, falling back to one request per symbol.

    A single unlisted symbol makes Binance reject the whole batch.
    """
    try:
        return await client.get_ticker_prices(symbols)
    except BinanceAPIError:
        log.debug("valuation.batch_price_failed", count=len(symbols))
    prices: dict[str, float] = {}
    for symbol in symbols:
        try:
            prices[symbol] = await client.get_ticker_price(symbol)
        except BinanceAPIError:
            log.debug("valuation.no_price", symbol=symbol)
    return prices


async def spot_usd_value(client: BinanceClient) -> float:
    balances = [b for b in await client.get_balances() if b.total > 0]
    total = sum(b.total for b in balances if b.asset in STABLECOINS)
    others = [b for b in balances if b.asset not in STABLECOINS]
    if not others:
        return total
    prices = await _usdt_prices(client, [f"{b.asset}USDT" for b in others])
    for b in others:
        price = prices.get(f"{b.asset}USDT")
        if price:
            total += b.total * price
    return total


async def margin_usd_value(client: BinanceClient) -> float:
    account = await client.get_margin_account()
    net_btc = float(account.get("totalNetAssetOfBtc") or 0)
    if net_btc == 0:
        return 0.0
    return net_btc * await client.get_ticker_price("BTCUSDT")


async def calculate_total_usd_value(client: BinanceClient) -> AccountValue:
    value = AccountValue(spot_value=await spot_usd_value(client))
    try:
        value.margin_value = await margin_usd_value(client)
    except BinanceAPIError as e:
        # Accounts without margin enabled reject the margin endpoint
        log.info("valuation.margin_unavailable", error=str(e))
    return value


async def sync_exchange(db: Database, exchange_id: str, client: BinanceClient) -> AccountValue:
    """Refresh and persist an exchange's cached USD values."""
    exchange = db.get_exchange(exchange_id)
    if exchange is None:
        raise ValueError(f"Exchange {exchange_id} not found")
    if not exchange.is_active:
        raise ValueError("Exchange is not active")

    value = await calculate_total_usd_value(client)
    db.update_exchange(
        exchange_id,
        spot_value=value.spot_value,
        margin_value=value.margin_value,
        total_value=value.total_value,
        last_synced_at=utc_now_iso(),
    )
    log.info("valuation.synced", exchange_id=exchange_id, **value.to_dict())
    return value
