"""
Run-scoped Metrics Collector
============================
Shared aggregation object written by every virtual user on every step.

Metric kinds:
- Trend: latency distribution with exact count/sum/min/max and a bounded
  reservoir sample for percentile queries
- Rate: share of true samples (``error_rate``, ``checks``, ``http_req_failed``)
- Counter: monotonic sum (``successful_requests``, ``http_reqs``, ``iterations``)
- Gauge: last value with observed min/max (``vus``)

Every add is O(1) amortized and holds its metric's lock only for a handful of
arithmetic operations, so the collector can be hammered from any number of
asyncio tasks (or threads) without lost updates.
"""

import random
import threading
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from load_errors import MetricTypeError

DEFAULT_RESERVOIR_SIZE = 100_000

TREND = "trend"
RATE = "rate"
COUNTER = "counter"
GAUGE = "gauge"


# =============================================================================
# RESERVOIR SAMPLING
# =============================================================================

class ReservoirSampler:
    """
    Reservoir sampling for memory-bounded percentile estimation.
    Keeps every sample until ``size`` is reached, so small runs are exact.
    """

    def __init__(self, size: int = DEFAULT_RESERVOIR_SIZE, rng: Optional[random.Random] = None):
        if size <= 0:
            raise ValueError("reservoir size must be positive")
        self.size = size
        self.reservoir: List[float] = []
        self.count = 0
        self._rng = rng or random.Random()

    def add(self, value: float):
        self.count += 1
        if len(self.reservoir) < self.size:
            self.reservoir.append(value)
        else:
            j = self._rng.randint(0, self.count - 1)
            if j < self.size:
                self.reservoir[j] = value

    def percentile(self, p: float) -> Optional[float]:
        """
        Percentile with linear interpolation between the closest ranks.
        Non-decreasing in ``p`` for any non-empty sample.
        """
        return percentiles(self.reservoir, [p])[0]


def percentiles(sample: List[float], ps: Sequence[float]) -> List[Optional[float]]:
    """Several percentiles of ``sample`` from a single sort."""
    for p in ps:
        if not 0 <= p <= 100:
            raise ValueError(f"percentile must be within [0, 100], got {p}")
    if not sample:
        return [None] * len(ps)
    sorted_sample = sorted(sample)
    last = len(sorted_sample) - 1
    result = []
    for p in ps:
        rank = last * p / 100
        lower = int(rank)
        upper = min(lower + 1, last)
        result.append(sorted_sample[lower] + (sorted_sample[upper] - sorted_sample[lower]) * (rank - lower))
    return result


# =============================================================================
# METRIC KINDS
# =============================================================================

class Trend:
    """Latency distribution in milliseconds."""

    kind = TREND

    def __init__(self, name: str, reservoir_size: int = DEFAULT_RESERVOIR_SIZE):
        self.name = name
        self._lock = threading.Lock()
        self._sampler = ReservoirSampler(reservoir_size)
        self._count = 0
        self._sum = 0.0
        self._min = float("inf")
        self._max = float("-inf")

    def add(self, value: float):
        with self._lock:
            self._count += 1
            self._sum += value
            if value < self._min:
                self._min = value
            if value > self._max:
                self._max = value
            self._sampler.add(value)

    @property
    def count(self) -> int:
        return self._count

    def percentile(self, p: float) -> Optional[float]:
        return self.percentiles([p])[0]

    def percentiles(self, ps: Sequence[float]) -> List[Optional[float]]:
        # Copy under the lock, sort outside it so writers are not held up.
        with self._lock:
            sample = list(self._sampler.reservoir)
        return percentiles(sample, ps)

    def aggregate(self, name: str) -> Optional[float]:
        """Resolve ``avg``/``min``/``max``/``med``/``count``/``p(N)`` for thresholds."""
        if name == "count":
            return float(self._count)
        if self._count == 0:
            return None
        if name == "avg":
            return self._sum / self._count
        if name == "min":
            return self._min
        if name == "max":
            return self._max
        if name == "med":
            return self.percentile(50)
        if name.startswith("p(") and name.endswith(")"):
            return self.percentile(float(name[2:-1]))
        raise KeyError(name)

    def values(self, duration: float = 0) -> Dict[str, Any]:
        if self._count == 0:
            return {"count": 0, "avg": 0, "min": 0, "med": 0, "max": 0, "p(90)": 0, "p(95)": 0, "p(99)": 0}
        med, p90, p95, p99 = self.percentiles([50, 90, 95, 99])
        return {
            "count": self._count,
            "avg": round(self._sum / self._count, 3),
            "min": round(self._min, 3),
            "med": round(med, 3),
            "max": round(self._max, 3),
            "p(90)": round(p90, 3),
            "p(95)": round(p95, 3),
            "p(99)": round(p99, 3),
        }


class Rate:
    """Ratio of true samples to all samples."""

    kind = RATE

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._passes = 0
        self._total = 0

    def add(self, value: bool):
        with self._lock:
            self._total += 1
            if value:
                self._passes += 1

    @property
    def count(self) -> int:
        return self._total

    @property
    def rate(self) -> float:
        with self._lock:
            return self._passes / self._total if self._total else 0.0

    def aggregate(self, name: str) -> Optional[float]:
        if name != "rate":
            raise KeyError(name)
        return self.rate if self._total else None

    def values(self, duration: float = 0) -> Dict[str, Any]:
        with self._lock:
            passes, total = self._passes, self._total
        return {
            "rate": round(passes / total, 6) if total else 0,
            "passes": passes,
            "fails": total - passes,
        }


class Counter:
    """Monotonic sum."""

    kind = COUNTER

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._value = 0

    def add(self, value: float = 1):
        if value < 0:
            raise ValueError("counters only go up")
        with self._lock:
            self._value += value

    @property
    def count(self) -> float:
        return self._value

    def aggregate(self, name: str, duration: float = 0) -> Optional[float]:
        if name == "count":
            return float(self._value)
        if name == "rate":
            return self._value / duration if duration > 0 else 0.0
        raise KeyError(name)

    def values(self, duration: float = 0) -> Dict[str, Any]:
        return {
            "count": self._value,
            "rate": round(self._value / duration, 3) if duration > 0 else 0,
        }


class Gauge:
    """Last observed value."""

    kind = GAUGE

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._value = 0.0
        self._min = float("inf")
        self._max = float("-inf")
        self._samples = 0

    def set(self, value: float):
        with self._lock:
            self._value = value
            self._samples += 1
            if value < self._min:
                self._min = value
            if value > self._max:
                self._max = value

    @property
    def count(self) -> int:
        return self._samples

    @property
    def value(self) -> float:
        return self._value

    def aggregate(self, name: str) -> Optional[float]:
        if self._samples == 0:
            return None
        if name == "value":
            return self._value
        if name == "min":
            return self._min
        if name == "max":
            return self._max
        raise KeyError(name)

    def values(self, duration: float = 0) -> Dict[str, Any]:
        if self._samples == 0:
            return {"value": 0, "min": 0, "max": 0}
        return {"value": self._value, "min": self._min, "max": self._max}


METRIC_KINDS = {TREND: Trend, RATE: Rate, COUNTER: Counter, GAUGE: Gauge}

# Aggregations each kind accepts in a threshold expression.
AGGREGATIONS = {
    TREND: ("avg", "min", "max", "med", "count", "p"),
    RATE: ("rate",),
    COUNTER: ("count", "rate"),
    GAUGE: ("value", "min", "max"),
}


# =============================================================================
# COLLECTOR
# =============================================================================

class MetricsCollector:
    """
    Run-owned aggregation object. Exposes add and query operations only;
    the metric objects themselves never leave this class.
    """

    def __init__(self, reservoir_size: int = DEFAULT_RESERVOIR_SIZE):
        self.reservoir_size = reservoir_size
        self._metrics: Dict[str, Any] = {}
        self._registry_lock = threading.Lock()
        self._checks_lock = threading.Lock()
        self._checks: Dict[str, List[int]] = {}
        self._errors: Dict[str, int] = defaultdict(int)
        self.start_time: float = 0
        self.end_time: float = 0

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------
    def register(self, name: str, kind: str):
        """Create the metric if needed. Re-registering with another kind fails."""
        metric = self._metrics.get(name)
        if metric is None:
            with self._registry_lock:
                metric = self._metrics.get(name)
                if metric is None:
                    if kind == TREND:
                        metric = Trend(name, self.reservoir_size)
                    else:
                        metric = METRIC_KINDS[kind](name)
                    self._metrics[name] = metric
        if metric.kind != kind:
            raise MetricTypeError(f"metric {name!r} is a {metric.kind}, not a {kind}")
        return metric

    # -------------------------------------------------------------------------
    # Add path
    # -------------------------------------------------------------------------
    def add_trend(self, name: str, value_ms: float):
        self.register(name, TREND).add(value_ms)

    def add_rate(self, name: str, value: bool):
        self.register(name, RATE).add(bool(value))

    def add_counter(self, name: str, value: float = 1):
        self.register(name, COUNTER).add(value)

    def set_gauge(self, name: str, value: float):
        self.register(name, GAUGE).set(value)

    def add_check(self, name: str, passed: bool):
        """Record one named check outcome and feed the ``checks`` rate."""
        with self._checks_lock:
            counts = self._checks.setdefault(name, [0, 0])
            counts[0 if passed else 1] += 1
        self.add_rate("checks", passed)

    def record_error(self, label: str):
        with self._checks_lock:
            self._errors[label[:50]] += 1

    # -------------------------------------------------------------------------
    # Query path
    # -------------------------------------------------------------------------
    def kind_of(self, name: str) -> Optional[str]:
        metric = self._metrics.get(name)
        return metric.kind if metric else None

    def metric_names(self) -> List[str]:
        return sorted(self._metrics)

    def sample_count(self, name: str) -> int:
        metric = self._metrics.get(name)
        return metric.count if metric else 0

    def percentile(self, name: str, p: float) -> Optional[float]:
        metric = self._metrics.get(name)
        if metric is None or metric.kind != TREND:
            return None
        return metric.percentile(p)

    def percentiles(self, name: str, ps: Sequence[float]) -> List[Optional[float]]:
        metric = self._metrics.get(name)
        if metric is None or metric.kind != TREND:
            return [None] * len(ps)
        return metric.percentiles(ps)

    def trend(self, name: str) -> Dict[str, Any]:
        """count/avg/min/med/max/p(90)/p(95)/p(99) of a trend, zeros when empty."""
        metric = self._metrics.get(name)
        if metric is None or metric.kind != TREND:
            return Trend(name).values()
        return metric.values()

    def rate(self, name: str) -> float:
        metric = self._metrics.get(name)
        if metric is None or metric.kind != RATE:
            return 0.0
        return metric.rate

    def counter(self, name: str) -> float:
        metric = self._metrics.get(name)
        if metric is None or metric.kind != COUNTER:
            return 0
        return metric.count

    def gauge(self, name: str) -> float:
        metric = self._metrics.get(name)
        if metric is None or metric.kind != GAUGE:
            return 0
        return metric.value

    def aggregate(self, name: str, aggregation: str) -> Optional[float]:
        """Aggregate lookup used by threshold evaluation."""
        metric = self._metrics[name]
        if metric.kind == COUNTER:
            return metric.aggregate(aggregation, self.duration)
        return metric.aggregate(aggregation)

    @property
    def error_rate(self) -> float:
        """Failed checked steps over all checked steps."""
        return self.rate("error_rate")

    @property
    def duration(self) -> float:
        if not self.start_time:
            return 0.0
        return (self.end_time or time.time()) - self.start_time

    def checks(self) -> Dict[str, Dict[str, int]]:
        with self._checks_lock:
            return {
                name: {"passes": passes, "fails": fails}
                for name, (passes, fails) in self._checks.items()
            }

    def errors(self) -> Dict[str, int]:
        with self._checks_lock:
            return dict(self._errors)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Plain-dict view of every metric, keyed by name."""
        duration = self.duration
        return {
            name: {"type": metric.kind, "values": metric.values(duration)}
            for name, metric in sorted(self._metrics.items())
        }
