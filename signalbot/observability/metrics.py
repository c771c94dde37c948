"""In-process metrics for webhook, order and stream activity.

Counters carry optional labels (``metrics.incr("webhooks.rejected",
status="401")``). The unlabelled total is always kept; each label set is
also tracked separately so ``/api/metrics`` can show the breakdown.
Latencies go into bounded histograms summarised as count/avg/p50/p95.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

_HISTOGRAM_WINDOW = 1_000


def _label_key(tags: dict[str, str]) -> str:
    return ",".join(f"{k}={tags[k]}" for k in sorted(tags))


def _percentile(sorted_data: list[float], pct: float) -> float:
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    lo, hi = math.floor(k), math.ceil(k)
    if lo == hi:
        return sorted_data[lo]
    return sorted_data[lo] * (hi - k) + sorted_data[hi] * (k - lo)


def _summarise(values: deque[float]) -> dict[str, float]:
    s = sorted(values)
    if not s:
        return {"count": 0, "avg": 0.0, "p50": 0.0, "p95": 0.0, "max": 0.0}
    return {
        "count": len(s),
        "avg": sum(s) / len(s),
        "p50": _percentile(s, 50),
        "p95": _percentile(s, 95),
        "max": s[-1],
    }


class MetricsCollector:
    """Thread-safe collector shared by the API threads and stream tasks."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._started = time.time()
        self._counters: dict[str, float] = defaultdict(float)
        self._labelled: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, deque[float]] = defaultdict(
            lambda: deque(maxlen=_HISTOGRAM_WINDOW)
        )

    def incr(self, name: str, value: float = 1.0, **tags: str) -> None:
        with self._lock:
            self._counters[name] += value
            if tags:
                self._labelled[name][_label_key(tags)] += value

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._histograms[name].append(value)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Observe the wall-clock duration of a block in milliseconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, (time.perf_counter() - start) * 1000.0)

    def counter(self, name: str, **tags: str) -> float:
        """Total for ``name``, or for one exact label set."""
        with self._lock:
            if tags:
                return self._labelled.get(name, {}).get(_label_key(tags), 0.0)
            return self._counters.get(name, 0.0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_secs": round(time.time() - self._started, 1),
                "counters": dict(self._counters),
                "labelled": {k: dict(v) for k, v in self._labelled.items()},
                "gauges": dict(self._gauges),
                "histograms": {k: _summarise(v) for k, v in self._histograms.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._started = time.time()
            self._counters.clear()
            self._labelled.clear()
            self._gauges.clear()
            self._histograms.clear()


metrics = MetricsCollector()
