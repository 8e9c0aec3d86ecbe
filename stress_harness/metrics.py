"""
Metrics aggregation
===================
Collects RequestOutcomes from many concurrent virtual users into one
consistent summary.

Two ways in, one way out:
- ``MetricsAggregator.record`` guards a single structure with a lock.
- ``MetricsAggregator.shard()`` hands each worker its own WorkerShard, which
  is merged by summation/concatenation at ``finalize`` time.

Percentiles use linear interpolation between ranks:
idx = (p/100) * (n-1); value = s[floor(idx)] * (1-frac) + s[ceil(idx)] * frac
"""

import math
import statistics
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .client import RequestOutcome


class AggregatorClosedError(RuntimeError):
    """record() was called after finalize()."""


def percentile(samples: Sequence[float], p: float, presorted: bool = False) -> float:
    """Linear-interpolated percentile; 0.0 for an empty sample set."""
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be within [0, 100], got {p}")
    if not samples:
        return 0.0
    ordered = samples if presorted else sorted(samples)
    idx = (p / 100) * (len(ordered) - 1)
    lower = math.floor(idx)
    upper = math.ceil(idx)
    frac = idx - lower
    return ordered[lower] * (1 - frac) + ordered[upper] * frac


@dataclass(frozen=True)
class LatencySummary:
    """Latency statistics in milliseconds. All zero when there is no data."""
    count: int = 0
    min: float = 0.0
    avg: float = 0.0
    max: float = 0.0
    p50: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    std_dev: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.count > 0

    @classmethod
    def from_samples(cls, samples: Sequence[float]) -> "LatencySummary":
        if not samples:
            return cls()
        ordered = sorted(samples)
        return cls(
            count=len(ordered),
            min=ordered[0],
            avg=statistics.fmean(ordered),
            max=ordered[-1],
            p50=percentile(ordered, 50, presorted=True),
            p90=percentile(ordered, 90, presorted=True),
            p95=percentile(ordered, 95, presorted=True),
            p99=percentile(ordered, 99, presorted=True),
            std_dev=statistics.stdev(ordered) if len(ordered) > 1 else 0.0,
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "min": round(self.min, 2),
            "average": round(self.avg, 2),
            "max": round(self.max, 2),
            "p50": round(self.p50, 2),
            "p90": round(self.p90, 2),
            "p95": round(self.p95, 2),
            "p99": round(self.p99, 2),
            "std_dev": round(self.std_dev, 2),
        }


@dataclass
class ScenarioStats:
    """Counts and latency samples for one scenario (or for the whole run)."""
    name: str
    total_requests: int = 0
    success_count: int = 0
    failure_count: int = 0
    retry_count: int = 0
    total_bytes_received: int = 0
    latencies: List[float] = field(default_factory=list)
    errors: Counter = field(default_factory=Counter)
    status_codes: Counter = field(default_factory=Counter)

    def add(self, outcome: RequestOutcome):
        self.total_requests += 1
        if outcome.success:
            self.success_count += 1
        else:
            self.failure_count += 1
            self.errors[outcome.error_kind] += 1
        if outcome.status_code:
            self.status_codes[outcome.status_code] += 1
        self.retry_count += outcome.retry_count
        self.total_bytes_received += outcome.response_size
        self.latencies.append(outcome.latency_ms)

    def merge(self, other: "ScenarioStats"):
        self.total_requests += other.total_requests
        self.success_count += other.success_count
        self.failure_count += other.failure_count
        self.retry_count += other.retry_count
        self.total_bytes_received += other.total_bytes_received
        self.latencies.extend(other.latencies)
        self.errors.update(other.errors)
        self.status_codes.update(other.status_codes)

    @property
    def success_rate(self) -> float:
        """Percentage of successful requests."""
        return (self.success_count / self.total_requests * 100) if self.total_requests > 0 else 0.0

    @property
    def error_rate(self) -> float:
        return (self.failure_count / self.total_requests * 100) if self.total_requests > 0 else 0.0

    @property
    def latency(self) -> LatencySummary:
        return LatencySummary.from_samples(self.latencies)


@dataclass
class AggregateStats(ScenarioStats):
    """Run-wide totals plus a per-scenario breakdown of the same shape."""
    name: str = "total"
    per_scenario: Dict[str, ScenarioStats] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def record(self, scenario_name: str, outcome: RequestOutcome):
        self.add(outcome)
        scenario = self.per_scenario.get(scenario_name)
        if scenario is None:
            scenario = self.per_scenario[scenario_name] = ScenarioStats(name=scenario_name)
        scenario.add(outcome)

    def merge(self, other: "ScenarioStats"):
        super().merge(other)
        for name, scenario in getattr(other, "per_scenario", {}).items():
            mine = self.per_scenario.get(name)
            if mine is None:
                mine = self.per_scenario[name] = ScenarioStats(name=name)
            mine.merge(scenario)

    @property
    def requests_per_second(self) -> float:
        return self.total_requests / self.elapsed_seconds if self.elapsed_seconds > 0 else 0.0

    @property
    def successful_requests_per_second(self) -> float:
        return self.success_count / self.elapsed_seconds if self.elapsed_seconds > 0 else 0.0

    @property
    def errors_per_second(self) -> float:
        return self.failure_count / self.elapsed_seconds if self.elapsed_seconds > 0 else 0.0

    @property
    def throughput_mbps(self) -> float:
        """Megabytes of response body received per second."""
        return (self.total_bytes_received / (1024 * 1024)) / self.elapsed_seconds if self.elapsed_seconds > 0 else 0.0

    def percentile(self, p: float) -> float:
        return percentile(self.latencies, p)


@dataclass(frozen=True)
class MetricsSnapshot:
    """Live counters for progress display."""
    total_requests: int = 0
    success_count: int = 0
    failure_count: int = 0
    retry_count: int = 0

    @property
    def success_rate(self) -> float:
        return (self.success_count / self.total_requests * 100) if self.total_requests > 0 else 0.0


class WorkerShard:
    """
    Metrics owned by a single worker. Its lock is only ever contended by the
    orchestrator reading a snapshot or closing the shard at finalize.
    """

    def __init__(self, worker_id: Optional[int] = None):
        self.worker_id = worker_id
        self._stats = AggregateStats()
        self._lock = threading.Lock()
        self._closed = False

    def record(self, scenario_name: str, outcome: RequestOutcome):
        with self._lock:
            if self._closed:
                raise AggregatorClosedError(f"Shard for worker {self.worker_id} is closed")
            self._stats.record(scenario_name, outcome)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                total_requests=self._stats.total_requests,
                success_count=self._stats.success_count,
                failure_count=self._stats.failure_count,
                retry_count=self._stats.retry_count,
            )

    def close(self) -> AggregateStats:
        with self._lock:
            self._closed = True
            return self._stats


class MetricsAggregator:
    """Accumulates outcomes from concurrent workers; frozen by finalize()."""

    def __init__(self, scenario_names: Iterable[str] = ()):
        self._scenario_names = list(scenario_names)
        self._lock = threading.Lock()
        self._stats = AggregateStats()
        self._shards: List[WorkerShard] = []
        self._final: Optional[AggregateStats] = None

    @property
    def finalized(self) -> bool:
        return self._final is not None

    def record(self, scenario_name: str, outcome: RequestOutcome):
        with self._lock:
            if self._final is not None:
                raise AggregatorClosedError("Aggregator already finalized")
            self._stats.record(scenario_name, outcome)

    def shard(self, worker_id: Optional[int] = None) -> WorkerShard:
        with self._lock:
            if self._final is not None:
                raise AggregatorClosedError("Aggregator already finalized")
            shard = WorkerShard(worker_id)
            self._shards.append(shard)
            return shard

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            parts = [shard.snapshot() for shard in self._shards]
            stats = self._stats
            return MetricsSnapshot(
                total_requests=stats.total_requests + sum(p.total_requests for p in parts),
                success_count=stats.success_count + sum(p.success_count for p in parts),
                failure_count=stats.failure_count + sum(p.failure_count for p in parts),
                retry_count=stats.retry_count + sum(p.retry_count for p in parts),
            )

    def finalize(self, elapsed_seconds: float) -> AggregateStats:
        """Merge everything recorded so far and freeze. Idempotent."""
        with self._lock:
            if self._final is not None:
                return self._final

            result = AggregateStats(
                per_scenario={name: ScenarioStats(name=name) for name in self._scenario_names},
            )
            result.merge(self._stats)
            for shard in self._shards:
                result.merge(shard.close())
            result.elapsed_seconds = max(0.0, elapsed_seconds)

            self._final = result
            return result
