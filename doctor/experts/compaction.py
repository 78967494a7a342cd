"""Compaction expert: compaction score (CS) backlog, thread configuration, task pressure, slow tasks."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from doctor.core.identifiers import bounded_int, optional_identifier
from doctor.core.models import QueryDescriptor
from doctor.core.units import to_float, to_int
from doctor.diagnostics.base import AnalysisOutput, BaseExpert, ToolSpec
from doctor.diagnostics.manifest import DiagnosisBuilder, ResultView, pick, run_mode_descriptor
from doctor.diagnostics.thresholds import MetricRule, Threshold, ratio_pct, rule_table

NAME = "compaction"

RULES = rule_table(
    MetricRule(
        "max_compaction_score",
        (
            Threshold("CRITICAL", ">=", 1000, category="compaction_score_extremely_high", urgency="IMMEDIATE"),
            Threshold("CRITICAL", ">=", 500, category="compaction_score_very_high", urgency="WITHIN_HOURS"),
            Threshold("WARNING", ">=", 100, category="compaction_score_high", urgency="WITHIN_DAYS"),
        ),
    ),
    MetricRule(
        "compact_threads",
        (Threshold("WARNING", "<", 4),),
        category="low_compaction_threads",
    ),
    MetricRule(
        "task_pressure_pct",
        (
            Threshold("CRITICAL", ">=", 100),
            Threshold("WARNING", ">=", 80),
        ),
        category="high_compaction_pressure",
    ),
    MetricRule(
        "slow_tasks",
        (
            Threshold("CRITICAL", ">", 10),
            Threshold("WARNING", ">", 0),
        ),
        category="slow_compaction_tasks",
    ),
)

HIGH_CS_FLOOR = 100
_SYSTEM_DBS = ("information_schema", "_statistics_")
_THREAD_CONFIGS = ("compact_threads", "max_compaction_threads")


def _scope_filter(args: Dict[str, Any], params: List[Any]) -> str:
    """Optional DB/table filter appended to `params` (placeholders continue from the current length)."""
    clause = ""
    db = optional_identifier(args, "database_name")
    table = optional_identifier(args, "table_name")
    if db:
        clause += f" AND DB_NAME = :p{len(params)}"
        params.append(db)
    if table:
        clause += f" AND TABLE_NAME = :p{len(params)}"
        params.append(table)
    return clause


def _thread_config_descriptor() -> QueryDescriptor:
    return QueryDescriptor(
        id="be_thread_config",
        statement="SELECT BE_ID, NAME, VALUE FROM information_schema.be_configs WHERE NAME IN (:p0, :p1)",
        params=list(_THREAD_CONFIGS),
        description="BE compaction thread configuration",
    )


# ---------------------------------------------------------------------------
# analyze_high_compaction_score
# ---------------------------------------------------------------------------


def high_cs_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    params: List[Any] = [*_SYSTEM_DBS]
    scope = _scope_filter(args, params)
    params.append(HIGH_CS_FLOOR)
    return [
        QueryDescriptor(
            id="high_cs_partitions",
            statement=(
                "SELECT DB_NAME, TABLE_NAME, PARTITION_NAME, COMPACTION_SCORE, DATA_SIZE, ROW_COUNT, BUCKETS "
                f"FROM information_schema.partitions_meta WHERE DB_NAME NOT IN (:p0, :p1){scope} "
                f"AND COMPACTION_SCORE >= :p{len(params) - 1} ORDER BY COMPACTION_SCORE DESC LIMIT 100"
            ),
            params=params,
            required=True,
            description="Partitions with a high compaction score",
        ),
        QueryDescriptor(
            id="running_tasks",
            statement=(
                "SELECT COUNT(*) AS total_running_tasks, COUNT(DISTINCT DB_NAME) AS affected_databases, "
                "COUNT(DISTINCT TABLE_NAME) AS affected_tables "
                "FROM information_schema.be_cloud_native_compactions WHERE COMPACT_STATUS = :p0"
            ),
            params=["RUNNING"],
            architecture_tag="shared_data",
            description="Running compaction tasks",
        ),
        QueryDescriptor(
            id="fe_config",
            statement="ADMIN SHOW FRONTEND CONFIG LIKE :p0",
            params=["lake_compaction_max_tasks"],
            architecture_tag="shared_data",
            description="FE compaction task limit",
        ),
        _thread_config_descriptor(),
    ]


def _thread_findings(b: DiagnosisBuilder, rows: Sequence[Dict[str, Any]]) -> None:
    rule = RULES["compact_threads"]
    for row in rows:
        if str(pick(row, "NAME", default="")).lower() != "compact_threads":
            continue
        threads = to_int(pick(row, "VALUE"))
        if threads is None:
            continue
        be = str(pick(row, "BE_ID", default="unknown"))
        b.check(
            rule,
            threads,
            message=f"compact_threads on BE {be} is {threads} (recommended at least {{threshold:.0f}})",
            impact="Compaction cannot keep up with ingestion",
            node=be,
        )
    if b.has_category("low_compaction_threads"):
        b.recommend(
            "MEDIUM",
            "configuration_tuning",
            "Raise compact_threads",
            actions=["UPDATE information_schema.be_configs SET VALUE = '16' WHERE NAME = 'compact_threads'"],
        )


def _task_pressure(b: DiagnosisBuilder, view: ResultView) -> None:
    running = to_int(view.first_value("running_tasks", "total_running_tasks"))
    max_tasks = to_int(view.first_value("fe_config", "Value"))
    if running is None or max_tasks is None:
        return
    if max_tasks <= 0:
        b.insight(
            "adaptive_compaction_tasks",
            "lake_compaction_max_tasks is adaptive; task pressure not evaluated",
            metrics={"running_tasks": running, "max_tasks": max_tasks},
        )
        return
    b.check(
        RULES["task_pressure_pct"],
        ratio_pct(running, max_tasks),
        message=f"{running}/{max_tasks} compaction task slots in use ({{value:.0f}}%)",
        metrics={"running_tasks": running, "max_tasks": max_tasks},
        impact="New compaction work queues behind running tasks",
    )


def analyze_high_cs(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_high_compaction_score")
    partitions = view.rows("high_cs_partitions")
    scores = [s for s in (to_float(pick(p, "COMPACTION_SCORE")) for p in partitions) if s is not None]
    max_cs = max(scores) if scores else 0.0

    issue = b.check(
        RULES["max_compaction_score"],
        max_cs,
        message="Max compaction score is {value:.0f} (threshold {threshold:.0f})",
        metrics={"high_cs_partitions": len(partitions)},
        impact="Query latency grows with the number of unmerged versions",
    )
    if partitions:
        top = sorted(partitions, key=lambda p: -(to_float(pick(p, "COMPACTION_SCORE")) or 0.0))[:10]
        b.insight(
            "high_cs_partitions",
            f"{len(partitions)} partition(s) with compaction score >= {HIGH_CS_FLOOR}",
            metrics={"max_cs": max_cs},
            details=[
                {
                    "partition": f"{pick(p, 'DB_NAME')}.{pick(p, 'TABLE_NAME')}.{pick(p, 'PARTITION_NAME')}",
                    "compaction_score": to_float(pick(p, "COMPACTION_SCORE")),
                }
                for p in top
            ],
        )
    if issue is not None and issue.severity == "CRITICAL":
        b.recommend(
            "HIGH",
            "immediate_action",
            "Trigger manual compaction on the worst partitions",
            actions=[
                "ALTER TABLE <db>.<table> COMPACT",
                "Watch the compaction score trend after triggering",
            ],
        )

    _thread_findings(b, view.rows("be_thread_config"))
    _task_pressure(b, view)
    b.meta(max_cs=max_cs)
    return b.build()


# ---------------------------------------------------------------------------
# analyze_slow_compaction_tasks (shared_data only)
# ---------------------------------------------------------------------------


def slow_tasks_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    min_seconds = bounded_int(args, "min_duration_seconds", 180, lo=1, hi=7 * 86400)
    params: List[Any] = ["RUNNING"]
    scope = _scope_filter(args, params)
    params.append(min_seconds)
    out: List[QueryDescriptor] = [] if args.get("architecture") else [run_mode_descriptor()]
    return out + [
        QueryDescriptor(
            id="slow_tasks",
            statement=(
                "SELECT TXN_ID, DB_NAME, TABLE_NAME, PARTITION_NAME, COMMIT_TIME, "
                "TIMESTAMPDIFF(SECOND, COMMIT_TIME, NOW()) AS duration_seconds "
                f"FROM information_schema.be_cloud_native_compactions WHERE COMPACT_STATUS = :p0{scope} "
                f"AND TIMESTAMPDIFF(SECOND, COMMIT_TIME, NOW()) >= :p{len(params) - 1} "
                "ORDER BY duration_seconds DESC"
            ),
            params=params,
            required=True,
            architecture_tag="shared_data",
            description="Long-running compaction tasks",
        ),
        _thread_config_descriptor(),
    ]


def analyze_slow_tasks(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_slow_compaction_tasks")
    tasks = view.rows("slow_tasks")
    durations = [d for d in (to_float(pick(t, "duration_seconds")) for t in tasks) if d is not None]
    issue = b.check(
        RULES["slow_tasks"],
        len(tasks),
        message=f"{len(tasks)} compaction task(s) running longer than expected",
        metrics={"max_duration_seconds": max(durations) if durations else 0},
        impact="Compaction score keeps rising while tasks stall",
    )
    if issue is not None:
        b.recommend(
            "HIGH",
            "performance_optimization",
            "Speed up slow compaction tasks",
            actions=[
                "Check CPU and memory on the compute nodes",
                "Raise compact_threads where below recommended",
                "Look for tables with many small files or very large buckets",
            ],
        )
    _thread_findings(b, view.rows("be_thread_config"))
    return b.build()


class CompactionExpert(BaseExpert):
    name = NAME
    version = "2.0.0"
    description = "Compaction score backlog, thread configuration and task pressure"
    rules = RULES

    def tool_specs(self) -> Sequence[ToolSpec]:
        return (
            ToolSpec("analyze_high_compaction_score", high_cs_manifest, analyze_high_cs, "High compaction score analysis"),
            ToolSpec(
                "analyze_slow_compaction_tasks",
                slow_tasks_manifest,
                analyze_slow_tasks,
                "Long-running compaction tasks (shared_data)",
                architecture="shared_data",
            ),
        )
