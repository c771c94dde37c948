"""Request-weight budgeting for Binance REST calls.

Binance meters IP traffic in request *weight* per minute (exchangeInfo
and account snapshots cost 20, a single ticker 2, a batch ticker 4) and
separately caps order placement. Buckets here are sized in weight units:
each call spends its endpoint's weight before it is sent, and waits when
the category's budget is exhausted.

Categories:
  - binance_market   public market data
  - binance_account  signed account snapshots
  - binance_orders   order placement and cancellation (order count)
  - binance_stream   listen-key lifecycle
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock


@dataclass
class BucketConfig:
    """Weight budget for one category."""
    weight_per_second: float
    max_weight: int
    name: str = ""


# 6000 weight/min on the spot API; keep well under it per category.
DEFAULT_LIMITS: dict[str, BucketConfig] = {
    "binance_market": BucketConfig(weight_per_second=40.0, max_weight=400, name="Binance market data"),
    "binance_account": BucketConfig(weight_per_second=20.0, max_weight=200, name="Binance account"),
    "binance_orders": BucketConfig(weight_per_second=8.0, max_weight=10, name="Binance orders"),
    "binance_stream": BucketConfig(weight_per_second=1.0, max_weight=5, name="Binance listen keys"),
}

ENDPOINT_WEIGHTS: dict[str, int] = {
    "/api/v3/exchangeInfo": 20,
    "/api/v3/account": 20,
    "/api/v3/ticker/price": 2,
    "/sapi/v1/margin/account": 10,
    "/sapi/v1/margin/maxBorrowable": 50,
}


def endpoint_weight(path: str, batch: bool = False) -> int:
    """Weight Binance charges for ``path``; batch tickers cost double."""
    weight = ENDPOINT_WEIGHTS.get(path, 1)
    if batch and path == "/api/v3/ticker/price":
        return 4
    return weight


class WeightBucket:
    """Thread-safe weight bucket shared by Flask threads and asyncio tasks."""

    def __init__(self, config: BucketConfig):
        self._config = config
        self._available = float(config.max_weight)
        self._last_refill = time.monotonic()
        self._lock = Lock()
        self._requests = 0
        self._weight_spent = 0
        self._waits = 0

    @property
    def config(self) -> BucketConfig:
        return self._config

    def _refill(self) -> None:
        now = time.monotonic()
        self._available = min(
            float(self._config.max_weight),
            self._available + (now - self._last_refill) * self._config.weight_per_second,
        )
        self._last_refill = now

    def _cost(self, weight: int) -> float:
        # an endpoint heavier than the whole bucket waits for a full bucket
        return float(min(weight, self._config.max_weight))

    def try_spend(self, weight: int = 1) -> bool:
        cost = self._cost(weight)
        with self._lock:
            self._refill()
            if self._available < cost:
                return False
            self._available -= cost
            self._requests += 1
            self._weight_spent += weight
            return True

    def wait_time(self, weight: int = 1) -> float:
        """Seconds until ``weight`` can be spent."""
        cost = self._cost(weight)
        with self._lock:
            self._refill()
            deficit = cost - self._available
        return max(deficit, 0.0) / self._config.weight_per_second

    async def acquire(self, weight: int = 1) -> None:
        while not self.try_spend(weight):
            self._waits += 1
            await asyncio.sleep(max(self.wait_time(weight), 0.001))

    @property
    def stats(self) -> dict[str, int]:
        return {
            "requests": self._requests,
            "weight_spent": self._weight_spent,
            "waits": self._waits,
        }


class RateLimiterRegistry:
    """Weight buckets by category, created on first use."""

    def __init__(self) -> None:
        self._buckets: dict[str, WeightBucket] = {}
        self._lock = Lock()

    def get(self, category: str) -> WeightBucket:
        with self._lock:
            bucket = self._buckets.get(category)
            if bucket is None:
                config = DEFAULT_LIMITS.get(category) or BucketConfig(
                    weight_per_second=5.0, max_weight=10, name=category,
                )
                bucket = self._buckets[category] = WeightBucket(config)
            return bucket

    def configure(self, category: str, weight_per_second: float, max_weight: int) -> None:
        with self._lock:
            self._buckets[category] = WeightBucket(
                BucketConfig(weight_per_second, max_weight, name=category)
            )

    def stats(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {name: bucket.stats for name, bucket in self._buckets.items()}


rate_limiter = RateLimiterRegistry()
