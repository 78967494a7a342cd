"""Canonical domain models (single source of truth).

This file is the one place where we define models used across:
- manifests (what data an expert needs)
- analysis (issues, diagnoses, health scores, recommendations)
- coordination (per-expert outcomes, correlation findings, the final report)

Design note:
- Output models are frozen: a Diagnosis is the immutable result of one analysis pass.
- Raw result payloads are plain dicts/lists on purpose; upstream SQL rows and Prometheus
  envelopes vary across StarRocks versions.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator

SourceType = Literal["sql", "prometheus_instant", "prometheus_range"]
Severity = Literal["INFO", "WARNING", "CRITICAL"]
Priority = Literal["HIGH", "MEDIUM", "LOW"]
HealthStatus = Literal["HEALTHY", "WARNING", "CRITICAL"]
HealthLevel = Literal["EXCELLENT", "GOOD", "FAIR", "POOR"]
DiagnosisStatus = Literal["not_applicable", "error"]
Contribution = Literal["succeeded", "degraded", "not_applicable"]
Architecture = Literal["shared_data", "shared_nothing"]

ResultSet = Dict[str, Any]


class BaseModelFrozen(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class QueryDescriptor(BaseModelFrozen):
    """
    Declarative data request, decoupled from execution.

    `statement` is SQL for `sql` descriptors and a PromQL expression otherwise.
    SQL placeholders use the named form `:p0, :p1, ...` matching `params` positionally.
    """

    id: str
    source_type: SourceType = "sql"
    statement: str
    params: List[Any] = Field(default_factory=list)
    required: bool = False
    architecture_tag: Optional[Architecture] = None
    description: Optional[str] = None
    # Range queries only
    time_range: Optional[str] = None
    step: Optional[str] = None
    # Set by the coordinator once the id is namespaced
    expert: Optional[str] = None

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("query id must not be blank")
        return v


class Issue(BaseModelFrozen):
    severity: Severity
    category: str
    message: str
    metrics: Dict[str, Any] = Field(default_factory=dict)
    impact: str = ""
    urgency: Optional[str] = None
    node: Optional[str] = None


class Insight(BaseModelFrozen):
    """Non-penalized observation (distribution summaries, "no data" markers, classified failures)."""

    category: str
    message: str
    metrics: Dict[str, Any] = Field(default_factory=dict)
    details: List[Dict[str, Any]] = Field(default_factory=list)


class Diagnosis(BaseModelFrozen):
    """
    Full output of one expert's analysis pass over one ResultSet.

    `issues` holds INFO-severity findings; `criticals`/`warnings` hold the rest.
    `metadata` may vary between identical runs (timestamps) and must never feed classification.
    """

    criticals: List[Issue] = Field(default_factory=list)
    warnings: List[Issue] = Field(default_factory=list)
    issues: List[Issue] = Field(default_factory=list)
    insights: List[Insight] = Field(default_factory=list)
    summary: str = ""
    status: Optional[DiagnosisStatus] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def all_issues(self) -> List[Issue]:
        return [*self.criticals, *self.warnings, *self.issues]

    def categories(self, severity: Optional[Severity] = None) -> Set[str]:
        return {i.category for i in self.all_issues() if severity is None or i.severity == severity}

    def has_issue(self, categories: Set[str], severity: Optional[Severity] = None) -> bool:
        return bool(self.categories(severity) & set(categories))

    @property
    def total_issues(self) -> int:
        return len(self.criticals) + len(self.warnings) + len(self.issues)


class HealthScore(BaseModelFrozen):
    score: int
    level: HealthLevel
    status: HealthStatus

    @field_validator("score")
    @classmethod
    def _score_in_range(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError(f"score out of range: {v}")
        return v


class Recommendation(BaseModelFrozen):
    priority: Priority
    category: str
    title: str
    description: str = ""
    actions: List[str] = Field(default_factory=list)
    is_cross_module: bool = False
    source_expert: Optional[str] = None
    affected_experts: List[str] = Field(default_factory=list)


class PrioritizedRecommendation(Recommendation):
    # Display only: carries no scheduling semantics.
    execution_order: int


class ExpertOutcome(BaseModelFrozen):
    expert: str
    version: str
    tool: str
    contribution: Contribution
    diagnosis: Diagnosis
    health: Optional[HealthScore] = None
    recommendations: List[Recommendation] = Field(default_factory=list)
    error: Optional[str] = None


class CorrelationFinding(BaseModelFrozen):
    rule_name: str
    impact_level: Priority
    explanation: str
    affected_experts: List[str] = Field(default_factory=list)
    remediation: Recommendation


class CoordinatedReport(BaseModelFrozen):
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    scope: List[str]
    outcomes: Dict[str, ExpertOutcome] = Field(default_factory=dict)
    correlations: List[CorrelationFinding] = Field(default_factory=list)
    cross_module_evaluated: bool = False
    aggregate: Optional[HealthScore] = None
    recommendations: List[PrioritizedRecommendation] = Field(default_factory=list)
    summary: str = ""

    def contributions(self) -> Dict[str, Contribution]:
        return {name: o.contribution for name, o in self.outcomes.items()}


class ExpertInfo(BaseModelFrozen):
    name: str
    version: str
    description: str
    tools: List[str] = Field(default_factory=list)
    default_tool: str
