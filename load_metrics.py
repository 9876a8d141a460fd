"""
Streaming metrics for the load generator.

Memory stays flat regardless of run length: latency is tracked with
Welford's running mean/variance plus a fixed-size reservoir for quantiles.
All mutation goes through MetricsCollector under a single lock; record
calls are short and never touch I/O.
"""

import math
import random
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from http_executor import RequestResult


class IterationOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    DROPPED = "dropped"
    INTERRUPTED = "interrupted"


# =============================================================================
# STREAMING PRIMITIVES
# =============================================================================

class RunningStats:
    """Welford's online mean/variance with min and max."""

    def __init__(self):
        self.count = 0
        self.mean = 0.0
        self._m2 = 0.0
        self.min = math.inf
        self.max = -math.inf

    def add(self, value: float):
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self._m2 += delta * (value - self.mean)
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    @property
    def stdev(self) -> float:
        return math.sqrt(self._m2 / (self.count - 1)) if self.count > 1 else 0.0


def percentile_of(sorted_values: Tuple[float, ...], p: float) -> float:
    """Nearest-rank percentile of an already sorted sequence."""
    if not sorted_values:
        return 0.0
    if p <= 0:
        return sorted_values[0]
    rank = math.ceil(p / 100 * len(sorted_values))
    return sorted_values[min(rank, len(sorted_values)) - 1]


# =============================================================================
# SNAPSHOTS
# =============================================================================

@dataclass(frozen=True)
class LatencySummary:
    count: int
    min: float
    max: float
    mean: float
    stdev: float
    samples: Tuple[float, ...]  # sorted reservoir

    def percentile(self, p: float) -> float:
        return percentile_of(self.samples, p)

    @property
    def p50(self) -> float:
        return self.percentile(50)

    @property
    def p90(self) -> float:
        return self.percentile(90)

    @property
    def p95(self) -> float:
        return self.percentile(95)

    @property
    def p99(self) -> float:
        return self.percentile(99)

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "min": round(self.min, 2),
            "average": round(self.mean, 2),
            "std_dev": round(self.stdev, 2),
            "p50": round(self.p50, 2),
            "p90": round(self.p90, 2),
            "p95": round(self.p95, 2),
            "p99": round(self.p99, 2),
            "max": round(self.max, 2),
        }


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time, immutable copy of one scenario's (or the global) counters."""
    requests: int
    failures: int
    status_codes: Mapping[int, int]
    transport_errors: Mapping[str, int]
    check_failures: int
    checks: Mapping[str, Tuple[int, int]]  # name -> (passes, fails)
    bytes_received: int
    latency: LatencySummary
    iterations: Mapping[str, int]
    overshoot_count: int
    overshoot_max_ms: float

    @property
    def transport_failures(self) -> int:
        return sum(self.transport_errors.values())

    @property
    def status_classes(self) -> Dict[str, int]:
        classes: Dict[str, int] = defaultdict(int)
        for code, count in self.status_codes.items():
            classes[f"{code // 100}xx"] += count
        return dict(sorted(classes.items()))

    @property
    def failure_rate(self) -> float:
        return self.failures / self.requests if self.requests else 0.0

    @property
    def check_passes(self) -> int:
        return sum(passes for passes, _ in self.checks.values())

    @property
    def check_pass_rate(self) -> float:
        total = self.check_passes + sum(fails for _, fails in self.checks.values())
        return self.check_passes / total if total else 1.0

    @property
    def dropped(self) -> int:
        return self.iterations.get(IterationOutcome.DROPPED.value, 0)

    @property
    def drop_rate(self) -> float:
        scheduled = sum(self.iterations.values())
        return self.dropped / scheduled if scheduled else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": self.requests,
            "failures": self.failures,
            "failure_rate_percent": round(self.failure_rate * 100, 2),
            "transport_errors": dict(self.transport_errors),
            "check_failures": self.check_failures,
            "checks": {name: {"passes": p, "fails": f} for name, (p, f) in self.checks.items()},
            "status_codes": {str(code): count for code, count in sorted(self.status_codes.items())},
            "status_classes": self.status_classes,
            "bytes_received": self.bytes_received,
            "latency_ms": self.latency.to_dict(),
            "iterations": dict(self.iterations),
            "overshoot": {"count": self.overshoot_count, "max_ms": round(self.overshoot_max_ms, 2)},
        }


@dataclass(frozen=True)
class MetricsSnapshot:
    scenarios: Mapping[str, StatsSnapshot]
    total: StatsSnapshot
    taken_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total.to_dict(),
            "scenarios": {name: stats.to_dict() for name, stats in self.scenarios.items()},
        }


# =============================================================================
# ACCUMULATION
# =============================================================================

@dataclass
class _Stats:
    requests: int = 0
    failures: int = 0
    check_failures: int = 0
    bytes_received: int = 0
    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))
    transport_errors: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    checks: Dict[str, List[int]] = field(default_factory=dict)
    iterations: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    latency: RunningStats = field(default_factory=RunningStats)
    reservoir_size: int = 10000
    rng: random.Random = field(default_factory=random.Random)
    samples: List[float] = field(default_factory=list)
    overshoot_count: int = 0
    overshoot_max_ms: float = 0.0

    def add_result(self, result: RequestResult, checks_passed: bool):
        self.requests += 1
        self.bytes_received += result.body_bytes
        if result.transport_error is not None:
            self.transport_errors[result.transport_error.value] += 1
            self.failures += 1
        else:
            self.status_codes[result.status] += 1
            self.latency.add(result.latency_ms)
            self._sample(result.latency_ms)
            if not checks_passed:
                self.failures += 1
                self.check_failures += 1

    def _sample(self, value: float):
        # algorithm R over every latency seen so far (latency.count)
        if len(self.samples) < self.reservoir_size:
            self.samples.append(value)
            return
        slot = self.rng.randrange(self.latency.count)
        if slot < self.reservoir_size:
            self.samples[slot] = value

    def add_check(self, name: str, passed: bool):
        counts = self.checks.setdefault(name, [0, 0])
        counts[0 if passed else 1] += 1

    def freeze(self) -> StatsSnapshot:
        lat = self.latency
        return StatsSnapshot(
            requests=self.requests,
            failures=self.failures,
            status_codes=MappingProxyType(dict(self.status_codes)),
            transport_errors=MappingProxyType(dict(self.transport_errors)),
            check_failures=self.check_failures,
            checks=MappingProxyType({k: (v[0], v[1]) for k, v in self.checks.items()}),
            bytes_received=self.bytes_received,
            latency=LatencySummary(
                count=lat.count,
                min=lat.min if lat.count else 0.0,
                max=lat.max if lat.count else 0.0,
                mean=lat.mean,
                stdev=lat.stdev,
                samples=tuple(sorted(self.samples)),
            ),
            iterations=MappingProxyType(dict(self.iterations)),
            overshoot_count=self.overshoot_count,
            overshoot_max_ms=self.overshoot_max_ms,
        )


class MetricsCollector:
    """
    Thread-safe accumulator of per-scenario and global statistics.

    Latency is only sampled for requests that got a response; transport
    failures are counted by kind instead.
    """

    def __init__(self, reservoir_size: int = 10000, trailing_window: int = 100, seed: Optional[int] = None):
        self.reservoir_size = reservoir_size
        self._rng = random.Random(seed)
        self._lock = threading.Lock()
        self._scenarios: Dict[str, _Stats] = {}
        self._total = self._new_stats()
        self._trailing: Deque[bool] = deque(maxlen=trailing_window)

    def _new_stats(self) -> _Stats:
        return _Stats(reservoir_size=self.reservoir_size, rng=self._rng)

    def _stats_for(self, scenario: str) -> _Stats:
        stats = self._scenarios.get(scenario)
        if stats is None:
            stats = self._scenarios[scenario] = self._new_stats()
        return stats

    def record(self, scenario: str, result: RequestResult, checks_passed: bool = True) -> None:
        with self._lock:
            self._stats_for(scenario).add_result(result, checks_passed)
            self._total.add_result(result, checks_passed)
            self._trailing.append(result.transport_error is not None or not checks_passed)

    def record_check(self, scenario: str, name: str, passed: bool) -> None:
        with self._lock:
            self._stats_for(scenario).add_check(name, passed)
            self._total.add_check(name, passed)

    def record_iteration(self, scenario: str, outcome: IterationOutcome) -> None:
        with self._lock:
            self._stats_for(scenario).iterations[outcome.value] += 1
            self._total.iterations[outcome.value] += 1

    def record_overshoot(self, scenario: str, lateness_ms: float) -> None:
        with self._lock:
            for stats in (self._stats_for(scenario), self._total):
                stats.overshoot_count += 1
                stats.overshoot_max_ms = max(stats.overshoot_max_ms, lateness_ms)

    def trailing_failure_ratio(self) -> Tuple[float, int]:
        """Failure ratio over the most recent requests, and how many were looked at."""
        with self._lock:
            count = len(self._trailing)
            if not count:
                return 0.0, 0
            return sum(self._trailing) / count, count

    @property
    def trailing_window(self) -> int:
        return self._trailing.maxlen

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                scenarios=MappingProxyType(
                    {name: stats.freeze() for name, stats in sorted(self._scenarios.items())}
                ),
                total=self._total.freeze(),
                taken_at=time.time(),
            )
