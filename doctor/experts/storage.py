"""Storage expert: disk usage, tablet health, data distribution and shared-data amplification."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from doctor.core.errors import ArchitectureMismatch
from doctor.core.identifiers import optional_identifier
from doctor.core.models import QueryDescriptor
from doctor.core.units import format_size_gb, parse_storage_size_gb, to_float, to_int
from doctor.diagnostics.base import AnalysisOutput, BaseExpert, ToolSpec
from doctor.diagnostics.manifest import DiagnosisBuilder, ResultView, pick, run_mode_descriptor
from doctor.diagnostics.thresholds import MetricRule, Threshold, ratio_pct, rule_table

NAME = "storage"

RULES = rule_table(
    MetricRule(
        "disk_usage_pct",
        (
            Threshold("CRITICAL", ">=", 98, category="disk_emergency", urgency="IMMEDIATE"),
            Threshold("CRITICAL", ">=", 95, category="disk_critical", urgency="WITHIN_HOURS"),
            Threshold("WARNING", ">=", 85, category="disk_warning", urgency="WITHIN_DAYS"),
        ),
    ),
    MetricRule(
        "error_tablets",
        (
            Threshold("CRITICAL", ">=", 10, urgency="IMMEDIATE"),
            Threshold("WARNING", ">=", 1, urgency="WITHIN_DAYS"),
        ),
        category="error_tablets",
    ),
    MetricRule(
        "error_tablet_rate_pct",
        (Threshold("CRITICAL", ">", 1, urgency="IMMEDIATE"),),
        category="high_error_tablet_rate",
    ),
    MetricRule(
        "data_deviation_pct",
        (Threshold("WARNING", ">", 20, urgency="WITHIN_WEEKS"),),
        category="data_imbalance",
    ),
    MetricRule(
        "amplification_ratio",
        (
            Threshold("CRITICAL", ">", 2.0),
            Threshold("WARNING", ">", 1.5),
        ),
        category="storage_amplification",
    ),
)

LARGE_PARTITION_GB = 10.0
_SYSTEM_DBS = ("information_schema", "_statistics_")


def _node(be: Dict[str, Any]) -> str:
    return str(pick(be, "IP", "Host", "BackendId", default="unknown"))


# ---------------------------------------------------------------------------
# storage_expert_analysis
# ---------------------------------------------------------------------------


def health_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    return [
        QueryDescriptor(id="backends", statement="SHOW BACKENDS", required=True, description="BE storage state"),
        QueryDescriptor(
            id="partition_storage",
            statement=(
                "SELECT DB_NAME, TABLE_NAME, PARTITION_NAME, DATA_SIZE, ROW_COUNT, STORAGE_SIZE, BUCKETS, "
                "REPLICATION_NUM FROM information_schema.partitions_meta "
                "ORDER BY STORAGE_SIZE DESC LIMIT 50"
            ),
            description="Largest partitions",
        ),
    ]


def _diagnose_disks(b: DiagnosisBuilder, backends: Sequence[Dict[str, Any]]) -> None:
    rule = RULES["disk_usage_pct"]
    for be in backends:
        usage = to_float(pick(be, "MaxDiskUsedPct"))
        if usage is None:
            continue
        avail_gb = round(parse_storage_size_gb(pick(be, "AvailCapacity")), 2)
        impact = {
            "disk_emergency": "Writes may fail and the node may stop serving",
            "disk_critical": "Write throughput drops and loads may fail",
            "disk_warning": "Plan a cleanup or capacity expansion",
        }
        issue = b.check(
            rule,
            usage,
            message=f"Disk usage on {_node(be)} is {{value:.1f}}% (threshold {{threshold}}%)",
            metrics={"available_gb": avail_gb},
            node=_node(be),
        )
        if issue is not None and issue.severity == "CRITICAL":
            b.recommend(
                "HIGH",
                "emergency_disk_management",
                f"Free disk space on {_node(be)}",
                description=impact[issue.category],
                actions=[
                    "Remove expired data and trash (ADMIN CLEAN TRASH)",
                    "Trigger compaction to reclaim space from deleted versions",
                    "Add disks or BE nodes, or migrate data",
                ],
            )


def _diagnose_tablets(b: DiagnosisBuilder, backends: Sequence[Dict[str, Any]]) -> None:
    rule = RULES["error_tablets"]
    total_err = 0
    total_tablets = 0
    for be in backends:
        err = to_int(pick(be, "ErrTabletNum")) or 0
        tablets = to_int(pick(be, "TabletNum")) or 0
        total_err += err
        total_tablets += tablets
        issue = b.check(
            rule,
            err,
            message=f"{err} error tablet(s) on {_node(be)}",
            metrics={"total_tablets": tablets},
            impact="Replica availability is at risk",
            node=_node(be),
        )
        if issue is not None:
            b.recommend(
                "HIGH" if issue.severity == "CRITICAL" else "MEDIUM",
                "tablet_repair",
                f"Repair error tablets on {_node(be)}",
                actions=[
                    "SHOW PROC '/statistic' to locate unhealthy tablets",
                    "ADMIN REPAIR TABLE <db>.<table>",
                    "Check disk and network health of the node",
                ],
            )

    if total_err > 0:
        rate = ratio_pct(total_err, total_tablets)
        if rate is not None:
            b.check(
                RULES["error_tablet_rate_pct"],
                rate,
                message="Cluster error tablet rate is {value:.2f}%",
                metrics={"error_tablets": total_err, "total_tablets": total_tablets},
                impact="Cluster-wide data integrity risk",
            )


def _diagnose_distribution(b: DiagnosisBuilder, backends: Sequence[Dict[str, Any]]) -> None:
    sizes = [(be, parse_storage_size_gb(pick(be, "DataUsedCapacity"))) for be in backends]
    total = sum(s for _, s in sizes)
    if total <= 0 or len(sizes) < 2:
        return
    avg = total / len(sizes)
    for be, size in sizes:
        deviation = abs(size - avg) / avg * 100
        b.check(
            RULES["data_deviation_pct"],
            deviation,
            message=f"Data on {_node(be)} deviates {{value:.1f}}% from the cluster average",
            metrics={"node_data_gb": round(size, 2), "cluster_avg_gb": round(avg, 2)},
            impact="Hot nodes and uneven query latency",
            node=_node(be),
        )
    if b.has_category("data_imbalance"):
        b.recommend(
            "LOW",
            "data_rebalance",
            "Rebalance tablets across BE nodes",
            actions=["Check tablet scheduler (SHOW PROC '/cluster_balance')", "Review bucket keys for skew"],
        )


def _large_partitions(b: DiagnosisBuilder, partitions: Sequence[Dict[str, Any]]) -> None:
    large = [p for p in partitions if parse_storage_size_gb(pick(p, "DATA_SIZE")) > LARGE_PARTITION_GB]
    if not large:
        return
    b.insight(
        "large_partitions",
        f"{len(large)} partition(s) larger than {LARGE_PARTITION_GB:.0f} GB",
        metrics={"count": len(large)},
        details=[
            {
                "partition": f"{pick(p, 'DB_NAME')}.{pick(p, 'TABLE_NAME')}.{pick(p, 'PARTITION_NAME')}",
                "size": pick(p, "DATA_SIZE"),
                "rows": pick(p, "ROW_COUNT"),
            }
            for p in large[:5]
        ],
    )


def analyze_health(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "storage_expert_analysis")
    backends = view.rows("backends")
    if not backends:
        b.no_data("backends", "BE nodes", view=view)
    _diagnose_disks(b, backends)
    _diagnose_tablets(b, backends)
    _diagnose_distribution(b, backends)

    if view.has("partition_storage"):
        _large_partitions(b, view.rows("partition_storage"))
    else:
        b.no_data("partition_storage", "partition sizes", view=view)

    b.meta(backend_count=len(backends))
    return b.build()


# ---------------------------------------------------------------------------
# analyze_storage_amplification (shared_data only)
# ---------------------------------------------------------------------------


def amplification_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    db = optional_identifier(args, "database_name")
    table = optional_identifier(args, "table_name")

    where = "DB_NAME NOT IN (:p0, :p1)"
    params: List[Any] = list(_SYSTEM_DBS)
    if db:
        where += f" AND DB_NAME = :p{len(params)}"
        params.append(db)
    if table:
        where += f" AND TABLE_NAME = :p{len(params)}"
        params.append(table)

    out: List[QueryDescriptor] = []
    if not args.get("architecture"):
        out.append(run_mode_descriptor())
    out.extend(
        [
            QueryDescriptor(
                id="storage_volumes",
                statement="SHOW STORAGE VOLUMES",
                architecture_tag="shared_data",
                description="Object storage volumes",
            ),
            QueryDescriptor(
                id="partition_storage",
                statement=(
                    "SELECT DB_NAME, TABLE_NAME, PARTITION_NAME, DATA_SIZE, STORAGE_SIZE "
                    f"FROM information_schema.partitions_meta WHERE {where} "
                    "ORDER BY STORAGE_SIZE DESC LIMIT 1000"
                ),
                params=params,
                required=True,
                architecture_tag="shared_data",
                description="Per-partition logical vs object storage size",
            ),
        ]
    )
    return out


def analyze_amplification(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    arch = args.get("architecture")
    if arch != "shared_data":
        raise ArchitectureMismatch("shared_data", arch)

    b = DiagnosisBuilder(NAME, "analyze_storage_amplification")
    partitions = view.rows("partition_storage")
    if not partitions:
        b.no_data("partition_storage", "partition storage sizes", view=view)
        return b.build()

    total_data = 0.0
    total_storage = 0.0
    by_table: Dict[str, List[float]] = {}
    for p in partitions:
        data_gb = parse_storage_size_gb(pick(p, "DATA_SIZE"))
        storage_gb = parse_storage_size_gb(pick(p, "STORAGE_SIZE"))
        total_data += data_gb
        total_storage += storage_gb
        key = f"{pick(p, 'DB_NAME')}.{pick(p, 'TABLE_NAME')}"
        acc = by_table.setdefault(key, [0.0, 0.0])
        acc[0] += data_gb
        acc[1] += storage_gb

    metrics = {
        "total_data_size": format_size_gb(total_data),
        "total_storage_size": format_size_gb(total_storage),
    }
    if total_data <= 0:
        b.insight("no_data", "Logical data size is zero; amplification cannot be computed", metrics=metrics)
        return b.build()

    ratio = total_storage / total_data
    issue = b.check(
        RULES["amplification_ratio"],
        ratio,
        message="Storage amplification is {value:.2f}x (threshold {threshold}x)",
        metrics=metrics,
        impact="Object storage holds far more bytes than the logical data",
    )
    worst = sorted(
        ((k, v[1] / v[0]) for k, v in by_table.items() if v[0] > 0),
        key=lambda kv: (-kv[1], kv[0]),
    )
    b.insight(
        "amplification_by_table",
        f"Storage amplification {ratio:.2f}x across {len(by_table)} table(s)",
        metrics={"amplification_ratio": round(ratio, 2), **metrics},
        details=[{"table": k, "amplification": round(v, 2)} for k, v in worst[:10]],
    )
    if issue is not None:
        b.recommend(
            "HIGH" if issue.severity == "CRITICAL" else "MEDIUM",
            "storage_optimization",
            "Reduce storage amplification",
            description=issue.message,
            actions=[
                "Run VACUUM to remove deleted data files",
                "Trigger compaction to merge small files",
                "Review bucket counts and data retention",
            ],
        )
    return b.build()


class StorageExpert(BaseExpert):
    name = NAME
    version = "2.0.0"
    description = "Disk usage, tablet health, data distribution and storage amplification"
    rules = RULES

    def tool_specs(self) -> Sequence[ToolSpec]:
        return (
            ToolSpec("storage_expert_analysis", health_manifest, analyze_health, "Storage health analysis"),
            ToolSpec(
                "analyze_storage_amplification",
                amplification_manifest,
                analyze_amplification,
                "Object storage amplification (shared_data)",
                architecture="shared_data",
            ),
        )
