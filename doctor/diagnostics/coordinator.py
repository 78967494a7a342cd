"""Multi-expert coordination.

Flow for a coordinated request:
1. one manifest per expert in scope, ids namespaced as "<expert>.<id>"
2. a supplier (client-executed JSON or live backends) fills the merged manifest
3. the ResultSet is split back per expert and each expert analyzes its own slice
4. failures become degraded placeholders; siblings always complete
5. correlation rules run over all Diagnoses, then recommendations are prioritized
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from doctor.core.errors import DoctorError, UnknownTool
from doctor.core.models import (
    CoordinatedReport,
    CorrelationFinding,
    ExpertInfo,
    ExpertOutcome,
    HealthScore,
    QueryDescriptor,
    ResultSet,
)
from doctor.diagnostics.base import Expert
from doctor.diagnostics.correlation import DEFAULT_RULES, CorrelationRule, correlate
from doctor.diagnostics.manifest import error_diagnosis, namespace_manifest, split_results
from doctor.diagnostics.prioritize import prioritize
from doctor.diagnostics.registry import ExpertRegistry, get_default_registry
from doctor.diagnostics.scoring import aggregate_score, score_diagnosis
from doctor.providers.resultset import ResultSupplier

logger = logging.getLogger(__name__)

COORDINATED_TOOL = "expert_analysis"
LIST_EXPERTS_TOOL = "get_available_experts"

# Keys that steer coordination and are not passed to experts.
_COORDINATION_KEYS = ("experts", "tools")


class ExpertCoordinator:
    def __init__(
        self,
        registry: Optional[ExpertRegistry] = None,
        *,
        rules: Sequence[CorrelationRule] = DEFAULT_RULES,
        cross_module: bool = True,
        default_scope: Optional[Sequence[str]] = None,
    ) -> None:
        self.registry = registry or get_default_registry()
        self.rules = tuple(rules)
        self.cross_module = cross_module
        self.default_scope = list(default_scope or [])

    # ------------------------------------------------------------------
    # Scope / tools / args
    # ------------------------------------------------------------------

    def scope(self, scope: Optional[Sequence[str]] = None) -> List[str]:
        return self.registry.normalize_scope(scope or self.default_scope)

    def tool_for(self, expert: Expert, args: Mapping[str, Any]) -> str:
        tools = args.get("tools") or {}
        return str(tools.get(expert.name) or expert.default_tool)

    @staticmethod
    def expert_args(args: Mapping[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in args.items() if k not in _COORDINATION_KEYS}

    # ------------------------------------------------------------------
    # Manifests
    # ------------------------------------------------------------------

    def _manifests(
        self, names: Sequence[str], args: Mapping[str, Any]
    ) -> tuple[Dict[str, List[QueryDescriptor]], Dict[str, str]]:
        manifests: Dict[str, List[QueryDescriptor]] = {}
        errors: Dict[str, str] = {}
        eargs = self.expert_args(args)
        for name in names:
            expert = self.registry.get(name)
            tool = self.tool_for(expert, args)
            try:
                manifests[name] = namespace_manifest(name, expert.build_manifest(tool, dict(eargs)))
            except DoctorError as e:
                logger.warning(f"Expert {name}: manifest for {tool} failed: {e}")
                errors[name] = str(e)
        return manifests, errors

    def build_manifest(self, scope: Optional[Sequence[str]] = None, args: Optional[Mapping[str, Any]] = None) -> List[QueryDescriptor]:
        """Merged, namespaced manifest for every expert in scope (registry order)."""
        args = args or {}
        names = self.scope(scope)
        manifests, _ = self._manifests(names, args)
        return [d for name in names for d in manifests.get(name, [])]

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _degraded(self, expert: Expert, tool: str, error: str) -> ExpertOutcome:
        return ExpertOutcome(
            expert=expert.name,
            version=expert.version,
            tool=tool,
            contribution="degraded",
            diagnosis=error_diagnosis(expert.name, tool, error),
            error=error,
        )

    def _analyze_one(
        self, name: str, results: ResultSet, args: Mapping[str, Any], acquisition_error: Optional[str] = None
    ) -> ExpertOutcome:
        expert = self.registry.get(name)
        tool = self.tool_for(expert, args)
        if acquisition_error:
            return self._degraded(expert, tool, acquisition_error)
        try:
            diagnosis, recs = expert.analyze(tool, results, self.expert_args(args))
        except DoctorError as e:
            logger.warning(f"Expert {name}: {tool} degraded: {e}")
            return self._degraded(expert, tool, str(e))
        except Exception as e:
            logger.exception(f"Expert {name}: {tool} failed unexpectedly")
            return self._degraded(expert, tool, f"unexpected error: {e}")

        if diagnosis.status == "not_applicable":
            return ExpertOutcome(
                expert=name, version=expert.version, tool=tool, contribution="not_applicable", diagnosis=diagnosis
            )
        return ExpertOutcome(
            expert=name,
            version=expert.version,
            tool=tool,
            contribution="succeeded",
            diagnosis=diagnosis,
            health=score_diagnosis(diagnosis),
            recommendations=recs,
        )

    def analyze(
        self,
        scope: Optional[Sequence[str]],
        results: Optional[ResultSet],
        args: Optional[Mapping[str, Any]] = None,
        *,
        acquisition_errors: Optional[Mapping[str, str]] = None,
    ) -> CoordinatedReport:
        """
        Analyze a namespaced ResultSet covering the merged manifest.

        Never raises for a single expert's failure; only an unknown scope name raises.
        """
        args = args or {}
        names = self.scope(scope)
        per_expert = split_results(results, names)
        errors = acquisition_errors or {}

        outcomes: Dict[str, ExpertOutcome] = {}
        for name in names:
            outcomes[name] = self._analyze_one(name, per_expert[name], args, errors.get(name))

        diagnoses = {name: o.diagnosis for name, o in outcomes.items()}
        evaluated = self.cross_module and len(diagnoses) >= 2
        correlations: List[CorrelationFinding] = correlate(diagnoses, self.rules) if evaluated else []
        for c in correlations:
            logger.info(f"Correlation {c.rule_name} fired ({c.impact_level}): {', '.join(c.affected_experts)}")

        # Unknown (None) rather than a perfect score when no expert succeeded.
        contributing = [o.diagnosis for o in outcomes.values() if o.contribution == "succeeded"]
        aggregate = aggregate_score(contributing, correlations) if contributing else None
        recommendations = prioritize([o.recommendations for o in outcomes.values()], correlations)

        return CoordinatedReport(
            scope=names,
            outcomes=outcomes,
            correlations=correlations,
            cross_module_evaluated=evaluated,
            aggregate=aggregate,
            recommendations=recommendations,
            summary=_summary(outcomes, correlations, aggregate),
        )

    async def run(
        self,
        scope: Optional[Sequence[str]],
        supplier: ResultSupplier,
        args: Optional[Mapping[str, Any]] = None,
    ) -> CoordinatedReport:
        """
        Direct mode: fetch each expert's manifest concurrently, then analyze.

        `supplier.fetch(descriptors) -> ResultSet` is blocking and runs in a worker thread;
        one expert's acquisition failure degrades only that expert.
        """
        args = args or {}
        names = self.scope(scope)
        manifests, errors = self._manifests(names, args)
        fetchable = [n for n in names if n in manifests]
        logger.info(f"Fetching data for {len(fetchable)} expert(s): {', '.join(fetchable)}")

        fetched = await asyncio.gather(
            *[asyncio.to_thread(supplier.fetch, manifests[n]) for n in fetchable],
            return_exceptions=True,
        )
        results: ResultSet = {}
        for name, res in zip(fetchable, fetched):
            if isinstance(res, BaseException):
                logger.warning(f"Expert {name}: acquisition failed: {res}")
                errors[name] = f"acquisition failed: {res}"
                continue
            results.update(res or {})
        return self.analyze(names, results, args, acquisition_errors=errors)

    # ------------------------------------------------------------------
    # Tool routing
    # ------------------------------------------------------------------

    def manifest_for_tool(self, tool: str, args: Optional[Mapping[str, Any]] = None) -> List[QueryDescriptor]:
        args = args or {}
        if tool == COORDINATED_TOOL:
            return self.build_manifest(args.get("experts"), args)
        if tool == LIST_EXPERTS_TOOL:
            return []
        owner = self.registry.tool_owner(tool)
        if owner is None:
            raise UnknownTool(tool)
        return owner.build_manifest(tool, dict(args))

    def analyze_tool(
        self, tool: str, results: Optional[ResultSet], args: Optional[Mapping[str, Any]] = None
    ) -> Union[CoordinatedReport, ExpertOutcome, List[ExpertInfo]]:
        """
        Route a tool call.

        Single-expert tools fail fast (MissingRequiredResult / UnknownTool propagate);
        the coordinated tool degrades per expert instead.
        """
        args = args or {}
        if tool == COORDINATED_TOOL:
            return self.analyze(args.get("experts"), results, args)
        if tool == LIST_EXPERTS_TOOL:
            return self.registry.describe()
        owner = self.registry.tool_owner(tool)
        if owner is None:
            raise UnknownTool(tool)
        diagnosis, recs = owner.analyze(tool, results or {}, dict(args))
        applicable = diagnosis.status != "not_applicable"
        return ExpertOutcome(
            expert=owner.name,
            version=owner.version,
            tool=tool,
            contribution="succeeded" if applicable else "not_applicable",
            diagnosis=diagnosis,
            health=score_diagnosis(diagnosis) if applicable else None,
            recommendations=recs,
        )


def _summary(
    outcomes: Mapping[str, ExpertOutcome],
    correlations: Sequence[CorrelationFinding],
    aggregate: Optional[HealthScore],
) -> str:
    counts = {"succeeded": 0, "degraded": 0, "not_applicable": 0}
    for o in outcomes.values():
        counts[o.contribution] += 1
    parts = [
        f"{len(outcomes)} expert(s): {counts['succeeded']} succeeded, {counts['degraded']} degraded, "
        f"{counts['not_applicable']} not applicable",
        f"{len(correlations)} cross-module finding(s)",
    ]
    if aggregate is None:
        parts.append("overall health unknown (no successful analyses)")
    else:
        parts.append(f"overall {aggregate.status} ({aggregate.score}/100, {aggregate.level})")
    return "; ".join(parts)
