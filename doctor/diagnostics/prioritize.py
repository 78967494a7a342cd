"""Recommendation merging and ordering for coordinated reports."""

from __future__ import annotations

from typing import Iterable, List, Mapping, Sequence

from doctor.core.models import CorrelationFinding, PrioritizedRecommendation, Recommendation

PRIORITY_RANK: Mapping[str, int] = {"HIGH": 3, "MEDIUM": 2, "LOW": 1}


def prioritize(
    per_expert: Iterable[Sequence[Recommendation]],
    correlations: Sequence[CorrelationFinding] = (),
) -> List[PrioritizedRecommendation]:
    """
    Merge expert recommendations (in scope order) with fired correlation remediations.

    Ordering: cross-module first, then priority; ties keep insertion order (`sorted` is stable).
    `execution_order` is 1-based and for display only.
    """
    merged: List[Recommendation] = [r for recs in per_expert for r in recs]
    merged.extend(c.remediation for c in correlations)
    ordered = sorted(merged, key=lambda r: (not r.is_cross_module, -PRIORITY_RANK.get(r.priority, 0)))
    return [
        PrioritizedRecommendation(**r.model_dump(), execution_order=i)
        for i, r in enumerate(ordered, start=1)
    ]
