"""Manifest plumbing shared by every expert.

- `ResultView`: typed, tolerant access to one expert's slice of a ResultSet
- `DiagnosisBuilder`: collects issues/insights/recommendations and freezes them into a Diagnosis
- namespacing helpers used by the coordinator to merge and split manifests
- `run_analysis`: the single entry point wrapping every expert tool analysis
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from doctor.core.errors import ArchitectureMismatch, MissingRequiredResult
from doctor.core.models import (
    Architecture,
    Diagnosis,
    Insight,
    Issue,
    Priority,
    QueryDescriptor,
    Recommendation,
    ResultSet,
    Severity,
)
from doctor.core.units import to_float
from doctor.diagnostics.thresholds import MetricRule, evaluate

if TYPE_CHECKING:
    from doctor.diagnostics.base import AnalysisOutput, BaseExpert, ToolSpec

logger = logging.getLogger(__name__)

NAMESPACE_SEP = "."
RUN_MODE_QUERY_ID = "run_mode"
_ARCHITECTURES = ("shared_data", "shared_nothing")


# ---------------------------------------------------------------------------
# Result access
# ---------------------------------------------------------------------------


def pick(row: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    """Case-insensitive column lookup; first present name wins."""
    if not isinstance(row, Mapping):
        return default
    for n in names:
        if n in row:
            return row[n]
    lowered = {str(k).lower(): v for k, v in row.items()}
    for n in names:
        if n.lower() in lowered:
            return lowered[n.lower()]
    return default


def is_error_marker(value: Any) -> bool:
    """`{"error": ...}` from a supplier, or a Prometheus envelope with a non-success status."""
    if not isinstance(value, Mapping):
        return False
    if "status" in value:
        return value.get("status") != "success"
    return "error" in value and "data" not in value


class ResultView:
    """
    Read-only view over one expert's results.

    Absent ids, `{"error": ...}` markers and malformed payloads all read as "no data"; only
    `require` raises.
    """

    def __init__(self, results: Optional[Mapping[str, Any]], *, expert: Optional[str] = None) -> None:
        self._results: Mapping[str, Any] = results or {}
        self.expert = expert

    def has(self, query_id: str) -> bool:
        v = self._results.get(query_id)
        return v is not None and not is_error_marker(v)

    def error(self, query_id: str) -> Optional[str]:
        v = self._results.get(query_id)
        if is_error_marker(v):
            return str(v.get("error") or v.get("status"))
        return None

    def require(self, query_id: str) -> Any:
        if not self.has(query_id):
            raise MissingRequiredResult(query_id, expert=self.expert)
        return self._results[query_id]

    def rows(self, query_id: str) -> List[Dict[str, Any]]:
        v = self._results.get(query_id)
        if isinstance(v, Mapping) and isinstance(v.get("rows"), list):
            v = v["rows"]
        if not isinstance(v, list):
            return []
        return [r for r in v if isinstance(r, Mapping)]

    def first_row(self, query_id: str) -> Optional[Dict[str, Any]]:
        rows = self.rows(query_id)
        return rows[0] if rows else None

    def first_value(self, query_id: str, *names: str) -> Any:
        row = self.first_row(query_id)
        if row is None:
            return None
        if not names:
            return next(iter(row.values()), None)
        return pick(row, *names)

    def _prom_result(self, query_id: str) -> Tuple[Optional[str], Any]:
        v = self._results.get(query_id)
        if isinstance(v, list):
            return None, v
        if not isinstance(v, Mapping) or v.get("status", "success") != "success":
            return None, []
        data = v.get("data") or {}
        if not isinstance(data, Mapping):
            return None, []
        return data.get("resultType"), data.get("result") or []

    def prom_vector(self, query_id: str) -> List[Dict[str, Any]]:
        """Instant vector as `[{"metric": {...}, "value": float}, ...]`; unparsable samples are skipped."""
        rtype, result = self._prom_result(query_id)
        if rtype == "scalar" or not isinstance(result, list):
            return []
        out: List[Dict[str, Any]] = []
        for r in result:
            if not isinstance(r, Mapping):
                continue
            sample = r.get("value")
            if not isinstance(sample, (list, tuple)) or len(sample) < 2:
                continue
            val = to_float(sample[1])
            if val is None:
                continue
            out.append({"metric": dict(r.get("metric") or {}), "value": val})
        return out

    def prom_scalar(self, query_id: str) -> Optional[float]:
        rtype, result = self._prom_result(query_id)
        if rtype == "scalar" and isinstance(result, (list, tuple)) and len(result) >= 2:
            return to_float(result[1])
        vec = self.prom_vector(query_id)
        return vec[0]["value"] if vec else None

    def prom_series(self, query_id: str) -> List[Tuple[Dict[str, Any], List[float]]]:
        """Range matrix as `[(labels, [v0, v1, ...]), ...]`; non-numeric points are dropped."""
        _, result = self._prom_result(query_id)
        if not isinstance(result, list):
            return []
        out: List[Tuple[Dict[str, Any], List[float]]] = []
        for r in result:
            if not isinstance(r, Mapping) or not isinstance(r.get("values"), list):
                continue
            points: List[float] = []
            for p in r["values"]:
                if isinstance(p, (list, tuple)) and len(p) >= 2:
                    val = to_float(p[1])
                    if val is not None:
                        points.append(val)
            out.append((dict(r.get("metric") or {}), points))
        return out


# ---------------------------------------------------------------------------
# Diagnosis assembly
# ---------------------------------------------------------------------------


class DiagnosisBuilder:
    def __init__(self, expert: str, tool: str) -> None:
        self.expert = expert
        self.tool = tool
        self._issues: List[Issue] = []
        self._insights: List[Insight] = []
        self._recs: List[Recommendation] = []
        self._metadata: Dict[str, Any] = {}

    def issue(
        self,
        severity: Severity,
        category: str,
        message: str,
        *,
        metrics: Optional[Dict[str, Any]] = None,
        impact: str = "",
        urgency: Optional[str] = None,
        node: Optional[str] = None,
    ) -> Issue:
        i = Issue(
            severity=severity,
            category=category,
            message=message,
            metrics=dict(metrics or {}),
            impact=impact,
            urgency=urgency,
            node=node,
        )
        self._issues.append(i)
        return i

    def check(
        self,
        rule: MetricRule,
        value: Any,
        *,
        message: str,
        metrics: Optional[Dict[str, Any]] = None,
        impact: str = "",
        node: Optional[str] = None,
    ) -> Optional[Issue]:
        """
        Evaluate `value` against `rule`; record and return an Issue when a threshold fires.

        `message` is formatted with `value` and `threshold`.
        """
        t = evaluate(rule, value)
        if t is None:
            return None
        v = to_float(value)
        m = {"value": round(v, 2) if v is not None else value, "threshold": t.value}
        m.update(metrics or {})
        try:
            text = message.format(value=v, threshold=t.value)
        except (KeyError, IndexError, ValueError):
            # Row-derived names may carry stray braces.
            text = message
        return self.issue(
            t.severity,
            rule.category_for(t),
            text,
            metrics=m,
            impact=impact,
            urgency=t.urgency,
            node=node,
        )

    def insight(
        self,
        category: str,
        message: str,
        *,
        metrics: Optional[Dict[str, Any]] = None,
        details: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self._insights.append(
            Insight(category=category, message=message, metrics=dict(metrics or {}), details=list(details or []))
        )

    def no_data(self, query_id: str, what: str, *, view: Optional[ResultView] = None) -> None:
        m: Dict[str, Any] = {"query_id": query_id}
        err = view.error(query_id) if view is not None else None
        if err:
            m["error"] = err
        self.insight("no_data", f"No data for {what}", metrics=m)

    def recommend(
        self,
        priority: Priority,
        category: str,
        title: str,
        *,
        description: str = "",
        actions: Optional[Iterable[str]] = None,
    ) -> None:
        self._recs.append(
            Recommendation(
                priority=priority,
                category=category,
                title=title,
                description=description,
                actions=list(actions or []),
                source_expert=self.expert,
                affected_experts=[self.expert],
            )
        )

    def meta(self, **kw: Any) -> None:
        self._metadata.update(kw)

    def has_category(self, *categories: str) -> bool:
        return any(i.category in categories for i in self._issues)

    def build(self, summary: Optional[str] = None) -> "AnalysisOutput":
        crit = [i for i in self._issues if i.severity == "CRITICAL"]
        warn = [i for i in self._issues if i.severity == "WARNING"]
        info = [i for i in self._issues if i.severity == "INFO"]
        if summary is None:
            if crit or warn or info:
                summary = (
                    f"{self.expert}: {len(crit)} critical, {len(warn)} warning, {len(info)} informational issue(s)"
                )
            else:
                summary = f"{self.expert}: no issues found"
        diag = Diagnosis(
            criticals=crit,
            warnings=warn,
            issues=info,
            insights=list(self._insights),
            summary=summary,
            metadata=_metadata(self.expert, self.tool, self._metadata),
        )
        return diag, list(self._recs)


def _metadata(expert: str, tool: str, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"expert": expert, "tool": tool, "analyzed_at": datetime.now(timezone.utc).isoformat()}
    out.update(extra or {})
    return out


def not_applicable_diagnosis(expert: str, tool: str, reason: str) -> Diagnosis:
    return Diagnosis(
        status="not_applicable",
        summary=f"{expert}: not applicable ({reason})",
        error=reason,
        metadata=_metadata(expert, tool),
    )


def error_diagnosis(expert: str, tool: str, error: str) -> Diagnosis:
    """Degraded placeholder: carries no issues so it never moves the aggregate score."""
    return Diagnosis(
        status="error",
        summary=f"{expert}: analysis failed ({error})",
        error=error,
        metadata=_metadata(expert, tool),
    )


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------


def normalize_architecture(value: Any) -> Optional[Architecture]:
    s = str(value or "").strip().lower()
    return s if s in _ARCHITECTURES else None  # type: ignore[return-value]


def run_mode_descriptor() -> QueryDescriptor:
    return QueryDescriptor(
        id=RUN_MODE_QUERY_ID,
        source_type="sql",
        statement="ADMIN SHOW FRONTEND CONFIG LIKE :p0",
        params=["run_mode"],
        description="Deployment topology (shared_data / shared_nothing)",
    )


def resolve_architecture(view: ResultView, args: Mapping[str, Any]) -> Optional[Architecture]:
    """Caller-supplied topology wins; otherwise read it from the `run_mode` FE config row."""
    arch = normalize_architecture(args.get("architecture"))
    if arch:
        return arch
    for row in view.rows(RUN_MODE_QUERY_ID):
        if str(pick(row, "Key", "Name", default="")).lower() in ("", "run_mode"):
            arch = normalize_architecture(pick(row, "Value"))
            if arch:
                return arch
    return None


def filter_for_topology(
    descriptors: Sequence[QueryDescriptor], architecture: Optional[str]
) -> List[QueryDescriptor]:
    """Drop descriptors tagged for another topology. Unknown topology keeps everything."""
    if not architecture:
        return list(descriptors)
    return [d for d in descriptors if d.architecture_tag in (None, architecture)]


# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------


def validate_manifest_ids(descriptors: Sequence[QueryDescriptor]) -> None:
    seen = set()
    for d in descriptors:
        if d.id in seen:
            raise ValueError(f"duplicate query id in manifest: {d.id}")
        seen.add(d.id)


def build_tool_manifest(expert: "BaseExpert", spec: "ToolSpec", args: Dict[str, Any]) -> List[QueryDescriptor]:
    arch = normalize_architecture(args.get("architecture"))
    if spec.architecture and arch and arch != spec.architecture:
        return []
    descriptors = filter_for_topology(spec.manifest(args), arch)
    validate_manifest_ids(descriptors)
    return descriptors


def namespace_manifest(expert: str, descriptors: Sequence[QueryDescriptor]) -> List[QueryDescriptor]:
    if NAMESPACE_SEP in expert:
        raise ValueError(f"expert name must not contain '{NAMESPACE_SEP}': {expert}")
    return [d.model_copy(update={"id": f"{expert}{NAMESPACE_SEP}{d.id}", "expert": expert}) for d in descriptors]


def split_results(results: Optional[Mapping[str, Any]], experts: Iterable[str]) -> Dict[str, ResultSet]:
    """Reverse `namespace_manifest`: `{"storage.disk": v}` -> `{"storage": {"disk": v}}`. Unknown prefixes are ignored."""
    out: Dict[str, ResultSet] = {e: {} for e in experts}
    for key, value in (results or {}).items():
        prefix, sep, local = str(key).partition(NAMESPACE_SEP)
        if not sep or prefix not in out:
            continue
        out[prefix][local] = value
    return out


# ---------------------------------------------------------------------------
# Analysis entry point
# ---------------------------------------------------------------------------


def run_analysis(
    expert: "BaseExpert", spec: "ToolSpec", results: Optional[ResultSet], args: Dict[str, Any]
) -> "AnalysisOutput":
    """
    Run one tool analysis.

    Raises MissingRequiredResult when a required (topology-applicable) result is absent.
    A topology mismatch becomes a not_applicable Diagnosis.
    """
    view = ResultView(results, expert=expert.name)
    arch = resolve_architecture(view, args)

    if spec.architecture and arch and arch != spec.architecture:
        logger.info(f"{expert.name}.{spec.name}: skipped, requires {spec.architecture} (cluster is {arch})")
        return not_applicable_diagnosis(expert.name, spec.name, f"requires {spec.architecture} architecture"), []

    for d in spec.manifest(args):
        if not d.required:
            continue
        if d.architecture_tag is not None and d.architecture_tag != arch:
            continue
        view.require(d.id)

    effective_args = dict(args)
    if arch:
        effective_args["architecture"] = arch
    try:
        return spec.analyze(view, effective_args)
    except ArchitectureMismatch as e:
        return not_applicable_diagnosis(expert.name, spec.name, str(e)), []
