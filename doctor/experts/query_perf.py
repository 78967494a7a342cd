"""Query performance expert: slow queries from the audit log, FE latency quantiles, query profiles."""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from doctor.core.errors import InvalidArguments, UnsafeIdentifier
from doctor.core.identifiers import bounded_int, optional_identifier
from doctor.core.models import QueryDescriptor
from doctor.core.units import to_float, to_int
from doctor.diagnostics.base import AnalysisOutput, BaseExpert, ToolSpec
from doctor.diagnostics.manifest import DiagnosisBuilder, ResultView, pick
from doctor.diagnostics.thresholds import MetricRule, Threshold, evaluate, rule_table

NAME = "query_perf"

RULES = rule_table(
    MetricRule(
        "slow_query_count",
        (
            Threshold("CRITICAL", ">=", 50),
            Threshold("WARNING", ">=", 10),
        ),
        category="frequent_slow_queries",
    ),
    MetricRule(
        "query_time_ms",
        (
            Threshold("CRITICAL", ">=", 300_000, category="runaway_query", urgency="IMMEDIATE"),
            Threshold("CRITICAL", ">=", 60_000, category="long_running_query", urgency="WITHIN_HOURS"),
        ),
    ),
    MetricRule("scan_gb", (Threshold("WARNING", ">=", 10),), category="large_scan_query"),
    MetricRule(
        "query_mem_gb",
        (
            Threshold("CRITICAL", ">=", 50),
            Threshold("WARNING", ">=", 10),
        ),
        category="high_query_memory",
    ),
    MetricRule(
        "p999_latency_ms",
        (
            Threshold("CRITICAL", ">=", 30_000),
            Threshold("WARNING", ">=", 10_000),
        ),
        category="high_p999_latency",
    ),
    MetricRule(
        "p99_latency_ms",
        (
            Threshold("CRITICAL", ">=", 10_000),
            Threshold("WARNING", ">=", 5_000),
        ),
        category="high_p99_latency",
    ),
    MetricRule("p95_latency_ms", (Threshold("WARNING", ">=", 3_000),), category="high_p95_latency"),
    MetricRule("p90_latency_ms", (Threshold("WARNING", ">=", 2_000),), category="high_p90_latency"),
)

AUDIT_DB = "starrocks_audit_db__"
AUDIT_TABLE = "starrocks_audit_tbl__"
DEFAULT_SLOW_THRESHOLD_MS = 10_000
# Quantile label values exported by the FE, keyed by the suffix used in query ids.
LATENCY_QUANTILES: Tuple[Tuple[str, str], ...] = (
    ("p50", "0.5"),
    ("p90", "0.9"),
    ("p95", "0.95"),
    ("p99", "0.99"),
    ("p999", "0.999"),
)

_GB = 1024**3
_TOP_QUERIES = 5
_QUERY_ID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def _instance(metric: Dict[str, Any]) -> str:
    return str(metric.get("instance") or metric.get("host") or "unknown")


# ---------------------------------------------------------------------------
# analyze_slow_queries (audit log)
# ---------------------------------------------------------------------------


def slow_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    minutes = bounded_int(args, "time_range_minutes", 60, lo=1, hi=7 * 24 * 60)
    threshold = bounded_int(args, "slow_threshold_ms", DEFAULT_SLOW_THRESHOLD_MS, lo=1, hi=24 * 3600 * 1000)
    limit = bounded_int(args, "limit", 100, lo=1, hi=1000)
    return [
        QueryDescriptor(
            id="audit_table",
            statement="SELECT TABLE_NAME FROM information_schema.tables WHERE TABLE_SCHEMA = :p0 AND TABLE_NAME = :p1",
            params=[AUDIT_DB, AUDIT_TABLE],
            required=True,
            description="Audit log table (AuditLoader plugin)",
        ),
        QueryDescriptor(
            id="slow_queries",
            statement=(
                "SELECT `queryId`, `timestamp`, `queryTime`, `scanRows`, `scanBytes`, `memCostBytes`, "
                "`state`, `db`, `user`, SUBSTRING(`stmt`, 1, 200) AS stmt_preview "
                f"FROM {AUDIT_DB}.{AUDIT_TABLE} "
                "WHERE `timestamp` >= DATE_SUB(NOW(), INTERVAL :p0 MINUTE) AND `queryTime` >= :p1 AND `state` = :p2 "
                "ORDER BY `queryTime` DESC LIMIT :p3"
            ),
            params=[minutes, threshold, "EOF", limit],
            description="Slowest successful queries in the window",
        ),
    ]


def _slow_row(row: Dict[str, Any]) -> Dict[str, Any]:
    scan_bytes = to_int(pick(row, "scanBytes", "scan_bytes")) or 0
    mem_bytes = to_int(pick(row, "memCostBytes", "mem_cost_bytes")) or 0
    return {
        "query_id": pick(row, "queryId", "query_id"),
        "query_time_ms": to_int(pick(row, "queryTime", "query_time")) or 0,
        "scan_rows": to_int(pick(row, "scanRows", "scan_rows")) or 0,
        "scan_gb": round(scan_bytes / _GB, 2),
        "mem_gb": round(mem_bytes / _GB, 2),
        "database": pick(row, "db", "database"),
        "user": pick(row, "user"),
        "stmt_preview": pick(row, "stmt_preview", "stmt"),
    }


def analyze_slow(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_slow_queries")
    threshold = args.get("slow_threshold_ms") or DEFAULT_SLOW_THRESHOLD_MS
    b.meta(slow_threshold_ms=threshold)

    if not view.rows("audit_table"):
        b.insight(
            "audit_log_unavailable",
            f"Audit log table {AUDIT_DB}.{AUDIT_TABLE} does not exist",
            metrics={"database": AUDIT_DB, "table": AUDIT_TABLE},
        )
        b.recommend(
            "MEDIUM",
            "audit_log_setup",
            "Install the AuditLoader plugin",
            description="Slow query analysis reads the audit log table the plugin maintains.",
            actions=[f"Create {AUDIT_DB}.{AUDIT_TABLE}", "INSTALL PLUGIN FROM '<path>/auditloader.zip'"],
        )
        return b.build()

    if not view.has("slow_queries"):
        b.no_data("slow_queries", "slow queries", view=view)
        return b.build()

    queries = [_slow_row(r) for r in view.rows("slow_queries")]
    if not queries:
        b.insight(
            "no_slow_queries",
            f"No queries at or above {threshold} ms in the window",
            metrics={"slow_threshold_ms": threshold},
        )
        return b.build()

    # Capped by `limit`, so the count is a lower bound.
    b.check(
        RULES["slow_query_count"],
        len(queries),
        message=f"{{value:.0f}} queries took at least {threshold} ms (threshold {{threshold}})",
        metrics={"slow_threshold_ms": threshold},
        impact="Sustained slow queries starve interactive workloads",
    )
    queries.sort(key=lambda q: q["query_time_ms"], reverse=True)
    long_running = [q for q in queries if evaluate(RULES["query_time_ms"], q["query_time_ms"])]
    if long_running:
        b.check(
            RULES["query_time_ms"],
            queries[0]["query_time_ms"],
            message=f"{len(long_running)} query(ies) ran for over a minute; the slowest took {{value:.0f}} ms",
            metrics={"queries": [q["query_id"] for q in long_running[:_TOP_QUERIES]]},
            impact="Holds pipeline slots and memory for the whole run",
        )
    large = [q for q in queries if evaluate(RULES["scan_gb"], q["scan_gb"])]
    if large:
        b.check(
            RULES["scan_gb"],
            max(q["scan_gb"] for q in large),
            message=f"{len(large)} slow query(ies) scanned at least {{threshold}} GB (max {{value:.1f}} GB)",
            metrics={"queries": [q["query_id"] for q in large[:_TOP_QUERIES]]},
            impact="I/O bound scans slow down concurrent queries",
        )
    b.check(
        RULES["query_mem_gb"],
        max(q["mem_gb"] for q in queries),
        message="A slow query used {value:.1f} GB of memory (threshold {threshold} GB)",
        impact="Large queries push BEs toward their memory limit",
    )

    total_ms = sum(q["query_time_ms"] for q in queries)
    b.insight(
        "slow_query_summary",
        f"{len(queries)} slow quer{'y' if len(queries) == 1 else 'ies'} at or above {threshold} ms",
        metrics={
            "total_slow_queries": len(queries),
            "avg_query_time_ms": round(total_ms / len(queries)),
            "max_query_time_ms": queries[0]["query_time_ms"],
            "total_scan_gb": round(sum(q["scan_gb"] for q in queries), 2),
        },
        details=queries[:_TOP_QUERIES],
    )

    users = Counter(str(q["user"] or "unknown") for q in queries)
    b.insight(
        "slow_queries_by_user",
        f"Slow queries come from {len(users)} user(s)",
        details=[{"user": u, "count": n} for u, n in sorted(users.items(), key=lambda kv: (-kv[1], kv[0]))],
    )

    if b.has_category("runaway_query", "long_running_query", "frequent_slow_queries"):
        b.recommend(
            "HIGH" if b.has_category("runaway_query") else "MEDIUM",
            "slow_query_optimization",
            "Optimize the slowest queries",
            actions=[
                "Inspect their profiles with analyze_query_profile",
                "Check partition and bucket pruning in EXPLAIN",
                "Set query_timeout or a resource group limit for ad-hoc users",
            ],
        )
    if b.has_category("large_scan_query"):
        b.recommend(
            "MEDIUM",
            "scan_reduction",
            "Reduce scan volume",
            actions=["Add partition predicates", "Use materialized views for repeated aggregations"],
        )
    if b.has_category("high_query_memory"):
        b.recommend(
            "MEDIUM",
            "query_memory",
            "Cap per-query memory",
            actions=["Set query_mem_limit", "Enable spilling for large joins and aggregations"],
        )
    return b.build()


# ---------------------------------------------------------------------------
# analyze_query_latency (Prometheus instant)
# ---------------------------------------------------------------------------


def latency_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    cluster = optional_identifier(args, "cluster_name")
    job = f'job="{cluster}", ' if cluster else ""
    out = [
        QueryDescriptor(
            id="qps",
            source_type="prometheus_instant",
            statement=f'sum(rate(starrocks_fe_query_total{{{job}group="fe"}}[1m])) by (instance)',
            description="Queries per second per FE",
        )
    ]
    for key, quantile in LATENCY_QUANTILES:
        out.append(
            QueryDescriptor(
                id=f"latency_{key}",
                source_type="prometheus_instant",
                statement=f'sum(starrocks_fe_query_latency_ms{{{job}quantile="{quantile}"}}) by (instance)',
                required=key == "p99",
                description=f"{key.upper()} query latency (ms) per FE",
            )
        )
    return out


def analyze_latency(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_query_latency")
    by_instance: Dict[str, Dict[str, float]] = {}
    found = False
    fired = []
    for key, _ in LATENCY_QUANTILES:
        samples = view.prom_vector(f"latency_{key}")
        if not samples:
            continue
        found = True
        for s in samples:
            by_instance.setdefault(_instance(s["metric"]), {})[key] = round(s["value"], 2)
        values = [s["value"] for s in samples]
        avg = sum(values) / len(values)
        rule = RULES.get(f"{key}_latency_ms")
        if rule is not None:
            issue = b.check(
                rule,
                avg,
                message=f"{key.upper()} query latency averages {{value:.0f}} ms across FEs (threshold {{threshold}})",
                metrics={"max_ms": round(max(values), 2), "instances": len(values)},
                impact="Users see slow dashboards and reports",
            )
            if issue is not None:
                fired.append(issue)

    if not found:
        b.no_data("latency_p99", "FE query latency", view=view)
        return b.build()

    qps = view.prom_vector("qps")
    total_qps = round(sum(s["value"] for s in qps), 2) if qps else None
    for s in qps:
        by_instance.setdefault(_instance(s["metric"]), {})["qps"] = round(s["value"], 2)
    b.insight(
        "query_latency_by_instance",
        f"Query latency for {len(by_instance)} FE(s)",
        metrics={"total_qps": total_qps} if total_qps is not None else {},
        details=[{"instance": i, **v} for i, v in sorted(by_instance.items())],
    )

    if fired:
        b.recommend(
            "HIGH" if any(i.severity == "CRITICAL" for i in fired) else "MEDIUM",
            "latency_optimization",
            "Bring query latency down",
            actions=[
                "Find the slow queries with analyze_slow_queries",
                "Check BE CPU and IO saturation during the peaks",
                "Isolate heavy workloads with resource groups",
            ],
        )
    return b.build()


# ---------------------------------------------------------------------------
# analyze_query_profile
# ---------------------------------------------------------------------------


def _query_id(args: Dict[str, Any]) -> str:
    raw = args.get("query_id")
    if not raw:
        raise InvalidArguments("'query_id' is required")
    s = str(raw).strip()
    if not _QUERY_ID_RE.match(s):
        raise UnsafeIdentifier("query_id", raw)
    return s


def profile_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    return [
        QueryDescriptor(
            id="profile_enabled",
            statement="SHOW VARIABLES LIKE :p0",
            params=["enable_profile"],
            description="Whether query profiling is on",
        ),
        QueryDescriptor(
            id="query_profile",
            statement="SELECT get_query_profile(:p0) AS profile",
            params=[_query_id(args)],
            required=True,
            description="Profile text of the query",
        ),
    ]


_PROFILE_FIELDS = {
    "total_time": re.compile(r"^\s*-\s*Total:[ \t]*(\S+)", re.MULTILINE),
    "query_state": re.compile(r"^\s*-\s*Query State:[ \t]*(\S+)", re.MULTILINE),
    "peak_memory": re.compile(r"^\s*-\s*QueryPeakMemoryUsage(?:PerNode)?:[ \t]*([^\n]+)", re.MULTILINE),
    "spill_bytes": re.compile(r"^\s*-\s*QuerySpillBytes:[ \t]*([^\n]+)", re.MULTILINE),
}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|ns|h|m|s)")
_DURATION_MS = {"h": 3_600_000.0, "m": 60_000.0, "s": 1000.0, "ms": 1.0, "us": 0.001, "ns": 0.000001}


def profile_duration_ms(text: str) -> Optional[float]:
    """`1m2s300ms` -> 62300.0; None when nothing parses."""
    parts = _DURATION_PART_RE.findall(text or "")
    if not parts:
        return None
    return sum(float(n) * _DURATION_MS[u] for n, u in parts)


def analyze_profile(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_query_profile")
    query_id = args.get("query_id")
    enabled_raw = view.first_value("profile_enabled", "Value", "VALUE", "value")
    enabled = None if enabled_raw is None else str(enabled_raw).strip().lower() in ("true", "1", "on")

    profile = str(view.first_value("query_profile", "profile", "PROFILE") or "")
    if not profile.strip():
        b.insight(
            "profile_unavailable",
            f"No profile recorded for query {query_id}",
            metrics={"query_id": query_id, "enable_profile": enabled},
        )
        if enabled is False:
            b.recommend(
                "LOW",
                "enable_profile",
                "Turn on query profiling",
                actions=["SET enable_profile = true", "Re-run the query and analyze its profile"],
            )
        return b.build()

    fields: Dict[str, Any] = {}
    for name, pattern in _PROFILE_FIELDS.items():
        m = pattern.search(profile)
        if m:
            fields[name] = m.group(1).strip()
    total_ms = profile_duration_ms(fields.get("total_time", ""))
    if total_ms is not None:
        fields["total_time_ms"] = round(total_ms, 2)
        b.check(
            RULES["query_time_ms"],
            total_ms,
            message=f"Query {query_id} took {{value:.0f}} ms",
            impact="Holds pipeline slots and memory for the whole run",
        )
    spill = fields.get("spill_bytes", "").split()
    if spill and (to_float(spill[0]) or 0) > 0:
        b.insight("query_spilled", "Query spilled intermediate data to disk", metrics={"spill": fields["spill_bytes"]})

    b.insight(
        "query_profile_summary",
        f"Profile of query {query_id}",
        metrics=fields,
        details=[{"profile_excerpt": profile[:2000]}],
    )
    if b.has_category("runaway_query", "long_running_query"):
        b.recommend(
            "MEDIUM",
            "slow_query_optimization",
            f"Optimize query {query_id}",
            actions=[
                "Look for the operator with the largest OperatorTotalTime",
                "Check join order and runtime filters",
            ],
        )
    return b.build()


class QueryPerfExpert(BaseExpert):
    name = NAME
    version = "2.0.0"
    description = "Slow queries, FE query latency quantiles and query profiles"
    rules = RULES

    def tool_specs(self) -> Sequence[ToolSpec]:
        return (
            ToolSpec("analyze_slow_queries", slow_manifest, analyze_slow, "Slow queries from the audit log"),
            ToolSpec("analyze_query_latency", latency_manifest, analyze_latency, "FE query latency quantiles"),
            ToolSpec("analyze_query_profile", profile_manifest, analyze_profile, "Summarize one query profile"),
        )
