"""
Per-backend latency and reliability tracking.

Each backend gets one ``PerformanceRecord`` holding exponential moving
averages (alpha 0.1) of latency and success. The first observation seeds
both averages directly; later observations are blended. Records live for
the process lifetime and are never persisted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from .backends.base import NLUBackend
from .types import BackendKind

logger = logging.getLogger(__name__)

EMA_ALPHA = 0.1

# Below this EMA success rate a backend counts as degraded
MIN_SUCCESS_RATE = 0.8

# Five canonical utterances, one per intent
BENCHMARK_COMMANDS: tuple[str, ...] = (
    "rat 5 cage 3 weight 280 grams",
    "change weight to 300 grams",
    "move rat 7 to cage 12",
    "show rats around 250 grams",
    "stop listening",
)


@dataclass
class PerformanceRecord:
    """Smoothed latency/success statistics for one backend."""

    backend: BackendKind
    avg_time_ms: float = 0.0
    success_rate: float = 0.0
    samples: int = 0

    def observe(self, time_ms: float, success: bool) -> None:
        """Fold one observation into the moving averages."""
        value = 1.0 if success else 0.0
        if self.samples == 0:
            self.avg_time_ms = time_ms
            self.success_rate = value
        else:
            self.avg_time_ms = self.avg_time_ms * (1 - EMA_ALPHA) + time_ms * EMA_ALPHA
            self.success_rate = self.success_rate * (1 - EMA_ALPHA) + value * EMA_ALPHA
        self.samples += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "avg_time_ms": round(self.avg_time_ms, 2),
            "success_rate": round(self.success_rate, 4),
            "samples": self.samples,
        }


class PerformanceTracker:
    """Owns the performance records of every backend seen so far."""

    def __init__(self) -> None:
        self._records: dict[BackendKind, PerformanceRecord] = {}

    def record(self, backend: BackendKind, time_ms: float, success: bool) -> PerformanceRecord:
        rec = self._records.get(backend)
        if rec is None:
            rec = PerformanceRecord(backend=backend)
            self._records[backend] = rec
        rec.observe(time_ms, success)
        return rec

    def set_benchmark(
        self, backend: BackendKind, avg_time_ms: float, success_rate: float, samples: int
    ) -> PerformanceRecord:
        """Replace a record with benchmark results (no smoothing)."""
        rec = PerformanceRecord(
            backend=backend,
            avg_time_ms=avg_time_ms,
            success_rate=success_rate,
            samples=samples,
        )
        self._records[backend] = rec
        return rec

    def get(self, backend: BackendKind) -> PerformanceRecord | None:
        return self._records.get(backend)

    def is_degraded(
        self,
        backend: BackendKind,
        max_time_ms: float,
        min_success_rate: float = MIN_SUCCESS_RATE,
    ) -> bool:
        """True if the backend is slow on average or unreliable."""
        rec = self._records.get(backend)
        if rec is None:
            return False
        return rec.avg_time_ms > max_time_ms or rec.success_rate < min_success_rate

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Copy of all records keyed by backend name."""
        return {kind.value: rec.to_dict() for kind, rec in self._records.items()}

    def reset(self) -> None:
        self._records.clear()


async def run_benchmark(
    backend: NLUBackend,
    tracker: PerformanceTracker,
    commands: tuple[str, ...] = BENCHMARK_COMMANDS,
) -> PerformanceRecord:
    """
    Time ``backend`` on a fixed command set and store the result.

    Failing commands count against the success rate and are excluded
    from the latency average.
    """
    times: list[float] = []
    successes = 0

    for text in commands:
        start = time.perf_counter()
        try:
            await backend.parse(text)
        except Exception as e:
            logger.warning(f"Benchmark command failed on {backend.kind.value}: {e}")
            continue
        times.append((time.perf_counter() - start) * 1000)
        successes += 1

    avg_time = sum(times) / len(times) if times else 0.0
    success_rate = successes / len(commands) if commands else 0.0
    logger.info(
        f"{backend.kind.value} benchmark: {avg_time:.0f}ms avg, "
        f"{success_rate:.0%} success"
    )
    return tracker.set_benchmark(backend.kind, avg_time, success_rate, len(commands))


__all__ = [
    "BENCHMARK_COMMANDS",
    "EMA_ALPHA",
    "MIN_SUCCESS_RATE",
    "PerformanceRecord",
    "PerformanceTracker",
    "run_benchmark",
]
