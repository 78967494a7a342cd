"""Optional, additive LLM failure classification.

Key requirements:
- Off by default; the deterministic classifier always runs first.
- The LLM answer replaces the rule answer only when it parses and names a known category.
- Never raises; never changes scores (issues are left untouched, only insights are enriched).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from doctor.core.models import BaseModelFrozen, CoordinatedReport, Diagnosis, ExpertOutcome
from doctor.diagnostics.classifier import FAILURE_CATEGORIES, KNOWN_CATEGORIES, UNCLASSIFIED, classify_text
from doctor.llm.client import generate_json

logger = logging.getLogger(__name__)

CLASSIFICATION_INSIGHT = "load_failure_classification"


class LLMFailureClassification(BaseModel):
    """Shape requested from the model."""

    model_config = ConfigDict(extra="ignore")

    category: str = Field(default=UNCLASSIFIED)
    root_cause: str = Field(default="")
    details: List[str] = Field(default_factory=list)

    @field_validator("category", mode="before")
    @classmethod
    def _category_norm(cls, v: Any) -> str:
        return str(v or "").strip().lower()

    @field_validator("root_cause", mode="before")
    @classmethod
    def _root_cause_trim(cls, v: Any) -> str:
        return str(v or "").strip()[:300]

    @field_validator("details", mode="before")
    @classmethod
    def _details_list(cls, v: Any) -> List[str]:
        if not isinstance(v, list):
            return []
        return [str(x).strip()[:300] for x in v[:5] if str(x).strip()]


class FailureClassification(BaseModelFrozen):
    category: str
    root_cause: str
    matched_pattern: Optional[str] = None
    details: List[str] = Field(default_factory=list)
    method: Literal["rule", "llm"] = "rule"
    rule_category: Optional[str] = None
    llm_error: Optional[str] = None


def _prompt(text: str, reason: Optional[str], rule_category: str) -> str:
    payload = {"error_msg": text[:2000], "state": reason or None, "rule_based_category": rule_category}
    categories = ", ".join(c.category for c in FAILURE_CATEGORIES)
    return (
        "You are a StarRocks expert classifying why a data load job failed.\n"
        "\n"
        "Hard constraints:\n"
        "- Use ONLY the provided JOB JSON.\n"
        f"- `category` must be one of: {categories}, {UNCLASSIFIED}.\n"
        "- `root_cause` is one short sentence.\n"
        "- `details` is at most 5 short, actionable strings.\n"
        "- Return ONLY valid JSON with keys: category, root_cause, details.\n"
        "\n"
        "JOB JSON:\n"
        f"{json.dumps(payload, sort_keys=True)}\n"
    )


def classify_failure(text: Optional[str], *, reason: Optional[str] = None, use_llm: bool = False) -> FailureClassification:
    rule = classify_text(text, reason)
    base = FailureClassification(
        category=rule.category,
        root_cause=rule.root_cause,
        matched_pattern=rule.matched_pattern,
        details=list(rule.details),
    )
    if not use_llm or not (text or "").strip():
        return base

    obj, err = generate_json(_prompt(str(text), reason, rule.category), schema=LLMFailureClassification)
    if err or not obj:
        return base.model_copy(update={"llm_error": err or "empty_response"})
    try:
        parsed = LLMFailureClassification.model_validate(obj)
    except ValidationError:
        return base.model_copy(update={"llm_error": "schema_invalid"})
    if parsed.category not in KNOWN_CATEGORIES or not parsed.root_cause:
        logger.info(f"LLM classification ignored (category={parsed.category!r})")
        return base.model_copy(update={"llm_error": "unknown_category"})

    return FailureClassification(
        category=parsed.category,
        root_cause=parsed.root_cause,
        matched_pattern=rule.matched_pattern,
        details=parsed.details,
        method="llm",
        rule_category=rule.category,
    )


def enrich_diagnosis(diagnosis: Diagnosis) -> Diagnosis:
    """Re-classify rule-based failure insights with the LLM; returns the input when nothing changed."""
    changed = False
    insights = []
    for ins in diagnosis.insights:
        if ins.category == CLASSIFICATION_INSIGHT and ins.metrics.get("method") == "rule" and ins.details:
            detail: Dict[str, Any] = ins.details[0]
            result = classify_failure(detail.get("error_msg"), use_llm=True)
            if result.method == "llm":
                ins = ins.model_copy(
                    update={
                        "message": result.root_cause,
                        "metrics": {**ins.metrics, "category": result.category, "method": "llm", "rule_category": result.rule_category},
                        "details": [*ins.details, {"llm_details": result.details}],
                    }
                )
                changed = True
        insights.append(ins)
    return diagnosis.model_copy(update={"insights": insights}) if changed else diagnosis


def enrich_outcome(outcome: ExpertOutcome) -> ExpertOutcome:
    enriched = enrich_diagnosis(outcome.diagnosis)
    return outcome if enriched is outcome.diagnosis else outcome.model_copy(update={"diagnosis": enriched})


def enrich_report(report: CoordinatedReport) -> CoordinatedReport:
    outcomes = {name: enrich_outcome(o) for name, o in report.outcomes.items()}
    return report.model_copy(update={"outcomes": outcomes})
