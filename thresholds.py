"""
Threshold evaluation and the machine-readable run summary.

Threshold expressions follow the familiar ``<aggregation> <op> <limit>`` form:

    http_req_duration: ["p(95)<500", "p(99)<1000"]
    error_rate:        ["rate<0.05"]
    successful_requests: ["count>0"]

Expressions are parsed and checked against metric kinds before the run
starts; evaluation happens once, after the last iteration has finished.
"""

import json
import operator
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from load_errors import ThresholdError
from load_metrics import AGGREGATIONS, MetricsCollector

OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>avg|min|max|med|count|rate|value|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<limit>-?\d+(?:\.\d+)?)\s*$"
)


@dataclass(frozen=True)
class Threshold:
    metric: str
    expression: str
    aggregation: str
    op: str
    limit: float

    @property
    def aggregation_kind(self) -> str:
        return "p" if self.aggregation.startswith("p(") else self.aggregation

    def check(self, actual: Optional[float]) -> bool:
        # Nothing observed means nothing breached.
        if actual is None:
            return True
        return OPERATORS[self.op](actual, self.limit)


def parse_threshold(metric: str, expression: str) -> Threshold:
    match = _EXPRESSION.match(expression)
    if not match:
        raise ThresholdError(f"invalid threshold for {metric}: {expression!r}")

    aggregation = match.group("agg")
    if match.group("pct") is not None:
        pct = float(match.group("pct"))
        if not 0 <= pct <= 100:
            raise ThresholdError(f"percentile out of range in {expression!r}")
        aggregation = f"p({pct:g})"

    return Threshold(
        metric=metric,
        expression=expression.strip(),
        aggregation=aggregation,
        op=match.group("op"),
        limit=float(match.group("limit")),
    )


@dataclass
class ThresholdResult:
    metric: str
    expression: str
    actual: Optional[float]
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "expression": self.expression,
            "actual": None if self.actual is None else round(self.actual, 6),
            "passed": self.passed,
        }


class ThresholdSet:
    """All configured thresholds, keyed by metric name in declaration order."""

    def __init__(self, thresholds: Iterable[Threshold] = ()):
        self.thresholds = list(thresholds)

    @classmethod
    def from_config(cls, config: Mapping[str, Union[str, List[str]]]) -> "ThresholdSet":
        thresholds = []
        for metric, expressions in config.items():
            if isinstance(expressions, str):
                expressions = [expressions]
            if not isinstance(expressions, list):
                raise ThresholdError(f"thresholds for {metric} must be a list of expressions")
            for expression in expressions:
                if not isinstance(expression, str):
                    raise ThresholdError(f"threshold for {metric} must be a string: {expression!r}")
                thresholds.append(parse_threshold(metric, expression))
        return cls(thresholds)

    def __len__(self) -> int:
        return len(self.thresholds)

    def validate(self, collector: MetricsCollector):
        """Fail fast on unknown metrics or aggregations the metric kind lacks."""
        for t in self.thresholds:
            kind = collector.kind_of(t.metric)
            if kind is None:
                raise ThresholdError(f"threshold references unknown metric {t.metric!r}")
            if t.aggregation_kind not in AGGREGATIONS[kind]:
                raise ThresholdError(
                    f"{t.expression!r} is not valid for {t.metric} ({kind} metric)"
                )

    def evaluate(self, collector: MetricsCollector) -> List[ThresholdResult]:
        results = []
        for t in self.thresholds:
            actual = collector.aggregate(t.metric, t.aggregation)
            results.append(ThresholdResult(t.metric, t.expression, actual, t.check(actual)))
        return results


# =============================================================================
# SUMMARY
# =============================================================================

def build_summary(
    collector: MetricsCollector,
    results: List[ThresholdResult],
    test_name: str = "Pickup Service Load Test",
    target_url: str = "",
    stages: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    metrics = collector.snapshot()
    for result in results:
        entry = metrics.setdefault(result.metric, {"type": None, "values": {}})
        entry.setdefault("thresholds", {})[result.expression] = {"ok": result.passed}

    return {
        "test_name": test_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "target_url": target_url,
        "state": {"test_run_duration_ms": round(collector.duration * 1000, 3)},
        "options": {"stages": stages or []},
        "metrics": metrics,
        "checks": collector.checks(),
        "transport_errors": collector.errors(),
        "thresholds": [r.to_dict() for r in results],
        "test_passed": all(r.passed for r in results),
    }


def write_summary(summary: Dict[str, Any], path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary, indent=2, ensure_ascii=False), encoding="utf-8")
    return path
