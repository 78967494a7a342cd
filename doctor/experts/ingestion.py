"""Ingestion expert: load failure rate, pending backlog, failure classification, import frequency."""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Sequence

from doctor.core.errors import InvalidArguments
from doctor.core.identifiers import bounded_int, optional_identifier, validate_label
from doctor.core.models import QueryDescriptor
from doctor.core.units import to_int
from doctor.diagnostics.base import AnalysisOutput, BaseExpert, ToolSpec
from doctor.diagnostics.classifier import classify_text
from doctor.diagnostics.manifest import DiagnosisBuilder, ResultView, pick
from doctor.diagnostics.thresholds import MetricRule, Threshold, ratio_pct, rule_table

NAME = "ingestion"

RULES = rule_table(
    MetricRule(
        "failure_rate_pct",
        (
            Threshold("CRITICAL", ">", 50, category="high_failure_rate", urgency="IMMEDIATE"),
            Threshold("CRITICAL", ">", 20, category="elevated_failure_rate", urgency="WITHIN_HOURS"),
            Threshold("WARNING", ">", 5, category="moderate_failure_rate", urgency="WITHIN_DAYS"),
        ),
    ),
    MetricRule(
        "pending_loads",
        (
            Threshold("CRITICAL", ">=", 100),
            Threshold("WARNING", ">=", 50),
        ),
        category="load_queue_backlog",
    ),
    MetricRule(
        "loads_per_hour",
        (Threshold("WARNING", ">", 60),),
        category="high_import_frequency",
    ),
)

WINDOW_HOURS = 24
_FAILED_SAMPLE = 20

_CATEGORY_ACTIONS: Dict[str, List[str]] = {
    "timeout": ["Check BE load and BRPC latency", "Split large loads or raise the job timeout"],
    "resource": ["Reduce load concurrency", "Raise load_mem_limit or add BE memory"],
    "data_quality": ["Inspect REJECTED_RECORD_PATH", "Align source columns with the table schema"],
    "network": ["Check FE/BE connectivity and BRPC ports"],
    "file": ["Verify source paths and broker credentials"],
    "transaction": ["Check transaction conflicts and publish latency"],
    "configuration": ["Review load properties against the table definition"],
    "permission": ["Grant the load user INSERT on the target table"],
    "cancelled": ["Confirm whether the job was cancelled manually"],
}


def _error_text(row: Dict[str, Any]) -> str:
    return str(pick(row, "ERROR_MSG", "FAIL_MSG", default="") or "")


# ---------------------------------------------------------------------------
# analyze_ingestion_health
# ---------------------------------------------------------------------------


def health_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    return [
        QueryDescriptor(
            id="load_summary",
            statement=(
                "SELECT COUNT(*) AS total_jobs, "
                "SUM(CASE WHEN STATE = :p0 THEN 1 ELSE 0 END) AS success_jobs, "
                "SUM(CASE WHEN STATE = :p1 THEN 1 ELSE 0 END) AS failed_jobs "
                "FROM information_schema.loads WHERE CREATE_TIME >= DATE_SUB(NOW(), INTERVAL :p2 HOUR)"
            ),
            params=["FINISHED", "CANCELLED", WINDOW_HOURS],
            required=True,
            description="Load jobs in the last 24 hours",
        ),
        QueryDescriptor(
            id="failed_loads",
            statement=(
                "SELECT JOB_ID, LABEL, TXN_ID, DATABASE_NAME, TYPE, STATE, ERROR_MSG, CREATE_TIME "
                "FROM information_schema.loads WHERE STATE = :p0 "
                "AND CREATE_TIME >= DATE_SUB(NOW(), INTERVAL :p1 HOUR) "
                "ORDER BY CREATE_TIME DESC LIMIT :p2"
            ),
            params=["CANCELLED", WINDOW_HOURS, _FAILED_SAMPLE],
            description="Most recent failed loads",
        ),
        QueryDescriptor(
            id="pending_loads",
            statement="SELECT COUNT(*) AS pending_jobs FROM information_schema.loads WHERE STATE IN (:p0, :p1)",
            params=["PENDING", "QUEUEING"],
            description="Loads waiting to run",
        ),
    ]


def _classify_failures(b: DiagnosisBuilder, failed: Sequence[Dict[str, Any]]) -> None:
    if not failed:
        return
    classified = [(row, classify_text(_error_text(row))) for row in failed]
    counts = Counter(c.category for _, c in classified)
    b.insight(
        "load_failure_breakdown",
        f"{len(failed)} recent failed load(s) across {len(counts)} categor{'y' if len(counts) == 1 else 'ies'}",
        metrics=dict(sorted(counts.items())),
        details=[
            {
                "label": pick(row, "LABEL"),
                "database": pick(row, "DATABASE_NAME"),
                "category": c.category,
                "root_cause": c.root_cause,
                "error_msg": _error_text(row)[:300],
            }
            for row, c in classified[:10]
        ],
    )
    resource = counts.get("resource", 0)
    if resource:
        b.issue(
            "WARNING",
            "load_failures_resource",
            f"{resource} load(s) failed for lack of memory or execution resources",
            metrics={"resource_failures": resource},
            impact="Loads compete with queries and compaction for BE memory",
        )


def analyze_health(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_ingestion_health")
    summary = view.first_row("load_summary") or {}
    total = to_int(pick(summary, "total_jobs")) or 0
    success = to_int(pick(summary, "success_jobs")) or 0
    failed = to_int(pick(summary, "failed_jobs")) or 0

    rate = ratio_pct(failed, total)
    if rate is None:
        b.insight("no_recent_loads", f"No load jobs in the last {WINDOW_HOURS} hours", metrics={"total_jobs": 0})
    else:
        b.check(
            RULES["failure_rate_pct"],
            rate,
            message=f"{failed}/{total} loads failed in the last {WINDOW_HOURS}h ({{value:.1f}}%)",
            metrics={"total_jobs": total, "success_jobs": success, "failed_jobs": failed},
            impact="Data freshness and completeness are at risk",
        )

    if view.has("pending_loads"):
        pending = to_int(view.first_value("pending_loads", "pending_jobs"))
        if pending is not None:
            b.check(
                RULES["pending_loads"],
                pending,
                message=f"{pending} load job(s) waiting in the queue",
                impact="New data lands late",
            )
    else:
        b.no_data("pending_loads", "pending load jobs", view=view)

    _classify_failures(b, view.rows("failed_loads"))

    if failed > 0:
        b.recommend(
            "HIGH",
            "failure_investigation",
            "Investigate failed load jobs",
            description=f"{failed} load job(s) failed in the last {WINDOW_HOURS} hours",
            actions=[
                "Read ERROR_MSG and TRACKING_URL of the failed jobs",
                "Check source data format against the table schema",
                "Verify network connectivity and privileges",
            ],
        )
    if rate is not None and rate > 20:
        b.recommend(
            "HIGH",
            "system_optimization",
            "Tune load configuration",
            actions=["Raise load timeouts", "Adjust batch sizes", "Check BE resource usage"],
        )
    if b.has_category("load_queue_backlog"):
        b.recommend(
            "MEDIUM",
            "load_scheduling",
            "Drain the load queue",
            actions=["Spread load submissions over time", "Check max_running_txn_num_per_db"],
        )
    if b.has_category("load_failures_resource"):
        b.recommend(
            "MEDIUM",
            "resource_planning",
            "Relieve memory pressure from loads",
            actions=_CATEGORY_ACTIONS["resource"],
        )
    if total:
        b.meta(total_jobs=total, failure_rate_pct=round(rate or 0.0, 2))
    return b.build()


# ---------------------------------------------------------------------------
# analyze_table_import_frequency
# ---------------------------------------------------------------------------


def frequency_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    days = bounded_int(args, "days", 7, lo=1, hi=90)
    params: List[Any] = [days]
    where = "CREATE_TIME >= DATE_SUB(NOW(), INTERVAL :p0 DAY)"
    db = optional_identifier(args, "database_name")
    table = optional_identifier(args, "table_name")
    if db:
        where += f" AND DATABASE_NAME = :p{len(params)}"
        params.append(db)
    if table:
        where += f" AND TABLE_NAME = :p{len(params)}"
        params.append(table)
    return [
        QueryDescriptor(
            id="load_frequency",
            statement=(
                "SELECT DATABASE_NAME, TABLE_NAME, COUNT(*) AS load_count FROM information_schema.loads "
                f"WHERE {where} GROUP BY DATABASE_NAME, TABLE_NAME ORDER BY load_count DESC LIMIT 50"
            ),
            params=params,
            required=True,
            description="Load jobs per table",
        )
    ]


def analyze_frequency(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_table_import_frequency")
    days = bounded_int(args, "days", 7, lo=1, hi=90)
    hours = days * 24
    rows = view.rows("load_frequency")
    if not rows:
        b.insight("no_recent_loads", f"No load jobs in the last {days} day(s)")
        return b.build()

    details: List[Dict[str, Any]] = []
    for row in rows:
        count = to_int(pick(row, "load_count")) or 0
        per_hour = count / hours
        name = f"{pick(row, 'DATABASE_NAME')}.{pick(row, 'TABLE_NAME')}"
        details.append({"table": name, "load_count": count, "loads_per_hour": round(per_hour, 2)})
        b.check(
            RULES["loads_per_hour"],
            per_hour,
            message=f"{name} receives {{value:.1f}} loads per hour",
            metrics={"load_count": count, "days": days},
            impact="Frequent small loads create many versions and compaction pressure",
        )
    b.insight("import_frequency", f"Load frequency for {len(rows)} table(s) over {days} day(s)", details=details[:20])
    if b.has_category("high_import_frequency"):
        b.recommend(
            "MEDIUM",
            "load_batching",
            "Batch frequent small loads",
            actions=["Merge micro-batches upstream", "Use larger Routine Load intervals"],
        )
    return b.build()


# ---------------------------------------------------------------------------
# analyze_load_failure
# ---------------------------------------------------------------------------


_MAX_TXN_ID = 2**63 - 1


def _job_ref(args: Dict[str, Any]) -> str:
    parts = []
    if args.get("label"):
        parts.append(f"label {args['label']!r}")
    if args.get("txn_id") not in (None, ""):
        parts.append(f"txn_id {args['txn_id']}")
    return " and ".join(parts)


def failure_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    """Look a load job up by `label`, `txn_id`, or both (both must then match)."""
    if not args.get("label") and args.get("txn_id") in (None, ""):
        raise InvalidArguments("'label' or 'txn_id' is required")
    conditions: List[str] = []
    params: List[Any] = []
    if args.get("label"):
        conditions.append(f"LABEL = :p{len(params)}")
        params.append(validate_label(args["label"]))
    if args.get("txn_id") not in (None, ""):
        conditions.append(f"TXN_ID = :p{len(params)}")
        params.append(bounded_int(args, "txn_id", 0, lo=1, hi=_MAX_TXN_ID))
    db = optional_identifier(args, "database_name")
    if db:
        conditions.append(f"DATABASE_NAME = :p{len(params)}")
        params.append(db)
    where = " AND ".join(conditions)
    return [
        QueryDescriptor(
            id="load_job",
            statement=(
                "SELECT JOB_ID, LABEL, TXN_ID, DATABASE_NAME, TYPE, STATE, ERROR_MSG, SCAN_ROWS, FILTERED_ROWS, "
                "REJECTED_RECORD_PATH, TRACKING_URL, CREATE_TIME "
                f"FROM information_schema.loads WHERE {where} ORDER BY CREATE_TIME DESC LIMIT 1"
            ),
            params=params,
            required=True,
            description="The load job to explain",
        )
    ]


def analyze_failure(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_load_failure")
    job = view.first_row("load_job")
    if job is None:
        b.insight("no_data", f"No load job matching {_job_ref(args)}")
        return b.build()

    state = str(pick(job, "STATE", default="") or "")
    if state.upper() != "CANCELLED":
        b.insight("load_not_failed", f"Load job is in state {state or 'unknown'}", metrics={"state": state})
        return b.build()

    c = classify_text(_error_text(job))
    details = list(c.details)
    filtered = to_int(pick(job, "FILTERED_ROWS")) or 0
    if c.category == "data_quality" and filtered:
        details.append(f"{filtered} row(s) filtered")
    if pick(job, "REJECTED_RECORD_PATH"):
        details.append(f"Rejected records: {pick(job, 'REJECTED_RECORD_PATH')}")

    b.issue(
        "WARNING",
        f"load_failure_{c.category}",
        f"Load {pick(job, 'LABEL')} failed: {c.root_cause}",
        metrics={"category": c.category, "matched_pattern": c.matched_pattern, "type": pick(job, "TYPE")},
        impact="Data from this load is missing",
    )
    b.insight(
        "load_failure_classification",
        c.root_cause,
        metrics={"category": c.category, "method": "rule"},
        details=[{"error_msg": _error_text(job)[:500], "notes": details}],
    )
    b.recommend(
        "HIGH" if c.category in ("resource", "timeout") else "MEDIUM",
        f"load_failure_{c.category}",
        f"Fix {c.category.replace('_', ' ')} failure of load {pick(job, 'LABEL')}",
        actions=_CATEGORY_ACTIONS.get(c.category, ["Inspect the full error message and tracking URL"]),
    )
    return b.build()


class IngestionExpert(BaseExpert):
    name = NAME
    version = "2.0.0"
    description = "Load failure rate, queue backlog, failure classification and import frequency"
    rules = RULES

    def tool_specs(self) -> Sequence[ToolSpec]:
        return (
            ToolSpec("analyze_ingestion_health", health_manifest, analyze_health, "Load job health (24h)"),
            ToolSpec(
                "analyze_table_import_frequency", frequency_manifest, analyze_frequency, "Per-table load frequency"
            ),
            ToolSpec(
                "analyze_load_failure",
                failure_manifest,
                analyze_failure,
                "Explain one failed load job by label or txn_id",
            ),
        )
