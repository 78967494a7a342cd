"""Memory expert: per-node memory usage and memory-limit configuration."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from doctor.core.models import QueryDescriptor
from doctor.core.units import parse_storage_size_gb, to_float
from doctor.diagnostics.base import AnalysisOutput, BaseExpert, ToolSpec
from doctor.diagnostics.manifest import DiagnosisBuilder, ResultView, pick
from doctor.diagnostics.thresholds import MetricRule, Threshold, ratio_pct, rule_table

NAME = "memory"

RULES = rule_table(
    MetricRule(
        "memory_usage_pct",
        (
            Threshold("CRITICAL", ">=", 95, category="memory_emergency", urgency="IMMEDIATE"),
            Threshold("CRITICAL", ">=", 90, category="critical_memory_usage", urgency="WITHIN_HOURS"),
            Threshold("WARNING", ">=", 80, category="high_memory_usage", urgency="WITHIN_DAYS"),
        ),
    ),
)

MEMORY_CONFIGS = (
    "mem_limit",
    "query_max_memory_limit_percent",
    "load_process_max_memory_limit_bytes",
    "load_process_max_memory_limit_percent",
    "compaction_max_memory_limit",
    "compaction_max_memory_limit_percent",
    "lake_metadata_cache_limit",
    "storage_page_cache_limit",
)


def memory_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    placeholders = ", ".join(f":p{i}" for i in range(len(MEMORY_CONFIGS)))
    return [
        QueryDescriptor(id="backends", statement="SHOW BACKENDS", required=True, description="BE memory state"),
        QueryDescriptor(id="compute_nodes", statement="SHOW COMPUTE NODES", description="CN memory state"),
        QueryDescriptor(
            id="memory_configs",
            statement=f"SELECT BE_ID, NAME, VALUE FROM information_schema.be_configs WHERE NAME IN ({placeholders})",
            params=list(MEMORY_CONFIGS),
            description="Memory-related BE configuration",
        ),
    ]


def _usage_pct(node: Dict[str, Any]) -> Optional[float]:
    pct = to_float(pick(node, "MemUsedPct"))
    if pct is not None:
        return pct
    used = parse_storage_size_gb(pick(node, "MemUsed"))
    limit = parse_storage_size_gb(pick(node, "MemLimit"))
    return ratio_pct(used, limit)


def _diagnose_nodes(b: DiagnosisBuilder, nodes: Sequence[Dict[str, Any]], kind: str) -> None:
    rule = RULES["memory_usage_pct"]
    for n in nodes:
        host = str(pick(n, "IP", "Host", default="unknown"))
        usage = _usage_pct(n)
        if usage is None:
            b.insight("no_data", f"No memory usage reported by {kind} {host}", metrics={"node": host})
            continue
        b.check(
            rule,
            usage,
            message=f"Memory usage on {kind} {host} is {{value:.1f}}% (threshold {{threshold}}%)",
            metrics={"node_type": kind},
            impact="Queries and loads may be cancelled with memory limit errors",
            node=host,
        )


def analyze_memory(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_memory")
    _diagnose_nodes(b, view.rows("backends"), "BE")
    _diagnose_nodes(b, view.rows("compute_nodes"), "CN")

    configs: Dict[str, List[str]] = {}
    for row in view.rows("memory_configs"):
        name = str(pick(row, "NAME", default="")).lower()
        if name:
            configs.setdefault(name, []).append(str(pick(row, "VALUE", default="")))
    if "mem_limit" not in configs:
        b.insight(
            "mem_limit_unknown",
            "mem_limit is not visible; memory headroom cannot be checked against configuration",
        )
    if configs:
        b.insight(
            "memory_configs",
            f"{len(configs)} memory setting(s) collected",
            details=[{"name": k, "values": sorted(set(v))} for k, v in sorted(configs.items())],
        )

    if b.has_category("memory_emergency", "critical_memory_usage"):
        b.recommend(
            "HIGH",
            "memory_relief",
            "Relieve memory pressure on hot nodes",
            actions=[
                "Find heavy queries with SHOW PROC '/current_queries'",
                "Lower query_mem_limit or enable spilling",
                "Reduce load and compaction concurrency",
            ],
        )
    elif b.has_category("high_memory_usage"):
        b.recommend(
            "MEDIUM",
            "memory_capacity",
            "Plan memory headroom",
            actions=["Review mem_limit against host memory", "Track memory trend per node"],
        )
    return b.build()


class MemoryExpert(BaseExpert):
    name = NAME
    version = "2.0.0"
    description = "Per-node memory usage and memory limit configuration"
    rules = RULES

    def tool_specs(self) -> Sequence[ToolSpec]:
        return (ToolSpec("analyze_memory", memory_manifest, analyze_memory, "Node memory usage"),)
