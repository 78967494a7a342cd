"""Health scoring (per expert and aggregate)."""

from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from doctor.core.models import CorrelationFinding, Diagnosis, HealthLevel, HealthScore, HealthStatus, Issue

SEVERITY_PENALTY: Mapping[str, int] = {"CRITICAL": 25, "WARNING": 10, "INFO": 5}
CORRELATION_PENALTY: Mapping[str, int] = {"HIGH": 15, "MEDIUM": 10, "LOW": 5}


def _clamp_0_100(x: int) -> int:
    return max(0, min(100, int(x)))


def _level(score: int) -> HealthLevel:
    if score >= 85:
        return "EXCELLENT"
    if score >= 70:
        return "GOOD"
    if score >= 50:
        return "FAIR"
    return "POOR"


def score_counts(*, critical: int = 0, warning: int = 0, info: int = 0, extra_penalty: int = 0) -> HealthScore:
    penalty = (
        SEVERITY_PENALTY["CRITICAL"] * max(0, critical)
        + SEVERITY_PENALTY["WARNING"] * max(0, warning)
        + SEVERITY_PENALTY["INFO"] * max(0, info)
        + max(0, extra_penalty)
    )
    score = _clamp_0_100(100 - penalty)
    status: HealthStatus = "CRITICAL" if critical > 0 else "WARNING" if warning > 0 else "HEALTHY"
    return HealthScore(score=score, level=_level(score), status=status)


def score_issues(issues: Iterable[Issue], *, extra_penalty: int = 0) -> HealthScore:
    counts = {"CRITICAL": 0, "WARNING": 0, "INFO": 0}
    for i in issues:
        counts[i.severity] += 1
    return score_counts(
        critical=counts["CRITICAL"],
        warning=counts["WARNING"],
        info=counts["INFO"],
        extra_penalty=extra_penalty,
    )


def score_diagnosis(diagnosis: Diagnosis) -> HealthScore:
    return score_issues(diagnosis.all_issues())


def aggregate_score(diagnoses: Sequence[Diagnosis], correlations: Sequence[CorrelationFinding] = ()) -> HealthScore:
    """
    Score the union of all contributors' issues, minus one penalty per fired correlation.

    Correlation penalties add to the per-issue penalties: a fired rule marks an interaction
    between findings, not a re-count of either finding.
    """
    issues = [i for d in diagnoses for i in d.all_issues()]
    extra = sum(CORRELATION_PENALTY.get(c.impact_level, 0) for c in correlations)
    return score_issues(issues, extra_penalty=extra)
