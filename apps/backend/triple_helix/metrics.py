from __future__ import annotations

import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict


@dataclass
class RequestStats:
    latencies_ms: Deque[float]
    errors: int
    total: int


@dataclass
class SyncStats:
    flushes: int = 0
    delivered: int = 0
    failed: int = 0
    timeouts: int = 0


class MetricsRegistry:
    """In-memory metrics registry.

    - Per-path rolling latency window for p95 calculation
    - Error counters
    - Progress sync counters (delivered / failed / timed out per flush)
    """

    def __init__(self, window_size: int = 200) -> None:
        self._window_size = window_size
        self._lock = threading.Lock()
        self._per_path: Dict[str, RequestStats] = defaultdict(
            lambda: RequestStats(latencies_ms=deque(maxlen=self._window_size), errors=0, total=0)
        )
        self._sync = SyncStats()

    def record(self, path: str, latency_ms: float, *, is_error: bool = False) -> None:
        with self._lock:
            stats = self._per_path[path]
            stats.latencies_ms.append(latency_ms)
            stats.total += 1
            if is_error:
                stats.errors += 1

    def record_sync(self, *, delivered: int, failed: int, timeouts: int = 0) -> None:
        with self._lock:
            self._sync.flushes += 1
            self._sync.delivered += delivered
            self._sync.failed += failed
            self._sync.timeouts += timeouts

    def sync_snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                "flushes": self._sync.flushes,
                "delivered": self._sync.delivered,
                "failed": self._sync.failed,
                "timeouts": self._sync.timeouts,
            }

    def snapshot(self) -> Dict[str, Dict[str, float | int]]:
        with self._lock:
            result: Dict[str, Dict[str, float | int]] = {}
            for path, stats in self._per_path.items():
                p95 = calculate_p95(list(stats.latencies_ms)) if stats.latencies_ms else 0.0
                result[path] = {
                    "p95_ms": round(p95, 2),
                    "count": stats.total,
                    "errors": stats.errors,
                }
            return result


def calculate_p95(values: list[float]) -> float:
    if not values:
        return 0.0
    sorted_vals = sorted(values)
    k = int(0.95 * (len(sorted_vals) - 1))
    return sorted_vals[k]


registry = MetricsRegistry()
