"""
Per-tier cache statistics.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict


@dataclass
class TierStats:
    """Hit/miss/eviction counters and a rolling latency window."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    errors: int = 0
    window: int = 1000
    latency_samples: Deque[float] = field(init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        self.latency_samples = deque(maxlen=self.window)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def avg_latency_ms(self) -> float:
        with self._lock:
            if not self.latency_samples:
                return 0.0
            return sum(self.latency_samples) / len(self.latency_samples) * 1000

    def record_hit(self, seconds: float):
        with self._lock:
            self.hits += 1
            self.latency_samples.append(seconds)

    def record_miss(self, seconds: float):
        with self._lock:
            self.misses += 1
            self.latency_samples.append(seconds)

    def record_evictions(self, count: int):
        if count:
            with self._lock:
                self.evictions += count

    def record_error(self):
        with self._lock:
            self.errors += 1

    def percentile_ms(self, pct: float) -> float:
        with self._lock:
            if not self.latency_samples:
                return 0.0
            ordered = sorted(self.latency_samples)
        index = min(len(ordered) - 1, int(len(ordered) * pct))
        return ordered[index] * 1000

    def reset(self):
        with self._lock:
            self.hits = 0
            self.misses = 0
            self.evictions = 0
            self.errors = 0
            self.latency_samples.clear()

    def snapshot(self) -> Dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "errors": self.errors,
            "hit_rate_percent": round(self.hit_rate * 100, 2),
            "avg_latency_ms": round(self.avg_latency_ms, 3),
        }
