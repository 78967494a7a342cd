"""Data-driven threshold rules.

Every expert declares its limits as `MetricRule` tuples in a module-level rule table and
classifies values through `evaluate`. Thresholds inside a rule are ordered most to least
severe; the first one satisfied wins, so a value past the critical limit never also
produces a warning.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from doctor.core.models import Severity
from doctor.core.units import to_float

_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
}
_SEVERITY_RANK = {"CRITICAL": 3, "WARNING": 2, "INFO": 1}


@dataclass(frozen=True)
class Threshold:
    severity: Severity
    comparator: str
    value: float
    category: Optional[str] = None
    urgency: Optional[str] = None

    def __post_init__(self) -> None:
        if self.comparator not in _COMPARATORS:
            raise ValueError(f"unsupported comparator: {self.comparator!r}")

    def matches(self, v: float) -> bool:
        return _COMPARATORS[self.comparator](v, self.value)


@dataclass(frozen=True)
class MetricRule:
    metric: str
    thresholds: Tuple[Threshold, ...]
    # Category used when a threshold does not carry its own.
    category: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.thresholds:
            raise ValueError(f"rule '{self.metric}' has no thresholds")
        ranks = [_SEVERITY_RANK[t.severity] for t in self.thresholds]
        if any(a < b for a, b in zip(ranks, ranks[1:])):
            raise ValueError(f"rule '{self.metric}' thresholds must be ordered most to least severe")

    def category_for(self, t: Threshold) -> str:
        return t.category or self.category or self.metric


def evaluate(rule: MetricRule, value: Any) -> Optional[Threshold]:
    """Return the first satisfied threshold, or None when the value is in range or not numeric."""
    v = to_float(value)
    if v is None:
        return None
    for t in rule.thresholds:
        if t.matches(v):
            return t
    return None


def rule_table(*rules: MetricRule) -> Mapping[str, MetricRule]:
    table: Dict[str, MetricRule] = {}
    for r in rules:
        if r.metric in table:
            raise ValueError(f"duplicate rule: {r.metric}")
        table[r.metric] = r
    return MappingProxyType(table)


def ratio_pct(numerator: Any, denominator: Any) -> Optional[float]:
    """`numerator / denominator * 100`, or None when the denominator is zero or missing."""
    num = to_float(numerator)
    den = to_float(denominator)
    if num is None or den is None or den == 0:
        return None
    return num / den * 100.0


def above(metric: str, *, warning: float, critical: float, category: Optional[str] = None) -> MetricRule:
    """Two-level `>=` rule (the common shape)."""
    return MetricRule(
        metric=metric,
        category=category,
        thresholds=(
            Threshold("CRITICAL", ">=", critical),
            Threshold("WARNING", ">=", warning),
        ),
    )


def below(metric: str, *, warning: float, critical: float, category: Optional[str] = None) -> MetricRule:
    """Two-level `<` rule for metrics where lower is worse (hit ratios)."""
    return MetricRule(
        metric=metric,
        category=category,
        thresholds=(
            Threshold("CRITICAL", "<", critical),
            Threshold("WARNING", "<", warning),
        ),
    )
