"""JSON dump helpers (CLI-friendly, testable).

We keep CLI printing logic out of core modules; this returns plain dicts.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Sequence, Union

from doctor.core.models import CoordinatedReport, ExpertInfo, ExpertOutcome, QueryDescriptor

DumpMode = Literal["summary", "report"]


def _clean(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v not in (None, "", [], {})}


def manifest_to_json_list(descriptors: Sequence[QueryDescriptor]) -> List[Dict[str, Any]]:
    return [_clean(d.model_dump(mode="json")) for d in descriptors]


def experts_to_json_list(infos: Sequence[ExpertInfo]) -> List[Dict[str, Any]]:
    return [i.model_dump(mode="json") for i in infos]


def outcome_to_json_dict(outcome: ExpertOutcome) -> Dict[str, Any]:
    return outcome.model_dump(mode="json")


def report_to_json_dict(report: CoordinatedReport, *, mode: DumpMode = "report") -> Dict[str, Any]:
    if mode == "report":
        # Pydantic v2: mode="json" produces JSON-serializable types.
        return report.model_dump(mode="json")

    # summary mode (small, stable, explainable)
    return {
        "created_at": report.created_at.isoformat(),
        "scope": list(report.scope),
        "aggregate": report.aggregate.model_dump(mode="json") if report.aggregate else None,
        "contributions": report.contributions(),
        "experts": {
            name: _clean(
                {
                    "tool": o.tool,
                    "health": o.health.model_dump(mode="json") if o.health else None,
                    "criticals": [i.category for i in o.diagnosis.criticals],
                    "warnings": [i.category for i in o.diagnosis.warnings],
                    "error": o.error,
                }
            )
            for name, o in report.outcomes.items()
        },
        "correlations": [
            {"rule": c.rule_name, "impact": c.impact_level, "experts": list(c.affected_experts)} for c in report.correlations
        ],
        "recommendations": [
            {"order": r.execution_order, "priority": r.priority, "title": r.title, "cross_module": r.is_cross_module}
            for r in report.recommendations
        ],
        "summary": report.summary,
    }


def to_json_payload(
    value: Union[CoordinatedReport, ExpertOutcome, Sequence[ExpertInfo]], *, mode: DumpMode = "report"
) -> Any:
    if isinstance(value, CoordinatedReport):
        return report_to_json_dict(value, mode=mode)
    if isinstance(value, ExpertOutcome):
        return outcome_to_json_dict(value)
    return experts_to_json_list(list(value))
