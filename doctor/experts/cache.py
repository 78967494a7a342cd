"""Cache expert: data cache hit ratio and capacity, hit-ratio jitter, metadata cache usage."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from doctor.core.identifiers import validate_time_range
from doctor.core.models import QueryDescriptor
from doctor.core.units import mean_and_stddev, rate_interval_for_step, step_for_time_range, to_int
from doctor.diagnostics.base import AnalysisOutput, BaseExpert, ToolSpec
from doctor.diagnostics.manifest import DiagnosisBuilder, ResultView, pick, run_mode_descriptor
from doctor.diagnostics.thresholds import MetricRule, Threshold, below, ratio_pct, rule_table

NAME = "cache"

RULES = rule_table(
    below("hit_ratio_pct", warning=50, critical=30, category="low_cache_hit_ratio"),
    below("overall_hit_ratio_pct", warning=50, critical=30, category="overall_low_hit_ratio"),
    MetricRule(
        "capacity_usage_pct",
        (
            Threshold("CRITICAL", ">=", 95, category="cache_capacity_critical", urgency="WITHIN_HOURS"),
            Threshold("WARNING", ">=", 85, category="cache_capacity_warning", urgency="WITHIN_DAYS"),
        ),
    ),
    MetricRule("node_hit_ratio_stddev", (Threshold("WARNING", ">", 15),), category="cache_hit_ratio_variance"),
    MetricRule("hit_ratio_stddev", (Threshold("WARNING", ">", 15),), category="cache_hit_ratio_jitter"),
    MetricRule("hit_ratio_range", (Threshold("WARNING", ">", 20),), category="wide_hit_ratio_range"),
    MetricRule("node_mean_spread", (Threshold("WARNING", ">", 20),), category="node_hit_ratio_imbalance"),
    MetricRule(
        "metadata_cache_usage_pct",
        (
            Threshold("CRITICAL", ">=", 90, category="metadata_cache_critical", urgency="IMMEDIATE"),
            Threshold("WARNING", ">=", 80, category="metadata_cache_warning", urgency="WITHIN_DAYS"),
        ),
    ),
    MetricRule(
        "metadata_cache_fluctuation",
        (Threshold("WARNING", ">", 20),),
        category="metadata_cache_fluctuation",
    ),
)

DEFAULT_TIME_RANGE = "1h"
# A falling trend is flagged when the last third averages this many points below the first third.
DEGRADING_TREND_DROP = 10.0


def _node_label(metric: Dict[str, Any]) -> str:
    return str(metric.get("instance") or metric.get("host") or metric.get("be_id") or "unknown")


def _hit_ratio_recommendation(b: DiagnosisBuilder) -> None:
    if b.has_category("low_cache_hit_ratio", "overall_low_hit_ratio"):
        b.recommend(
            "HIGH",
            "cache_hit_ratio_optimization",
            "Improve data cache hit ratio",
            actions=[
                "Increase datacache_disk_size / datacache_mem_size",
                "Warm up hot tables with CACHE SELECT",
                "Check whether large scans are evicting hot data",
            ],
        )


# ---------------------------------------------------------------------------
# analyze_cache_performance
# ---------------------------------------------------------------------------


def performance_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    return [
        QueryDescriptor(id="compute_nodes", statement="SHOW COMPUTE NODES", description="Compute nodes"),
        QueryDescriptor(
            id="cache_metrics",
            statement="SELECT * FROM information_schema.be_cache_metrics",
            description="Per-node data cache counters",
        ),
    ]


def analyze_performance(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_cache_performance")
    metrics = view.rows("cache_metrics")
    if not metrics:
        b.no_data("cache_metrics", "data cache metrics", view=view)
        return b.build()

    total_hits = 0
    total_requests = 0
    node_ratios: List[Tuple[str, float]] = []
    for row in metrics:
        node = str(pick(row, "BE_ID", "NODE_ID", default="unknown"))
        hits = to_int(pick(row, "hit_count", "HIT_COUNT")) or 0
        misses = to_int(pick(row, "miss_count", "MISS_COUNT")) or 0
        total_hits += hits
        total_requests += hits + misses
        ratio = ratio_pct(hits, hits + misses)
        if ratio is None:
            b.insight("no_data", f"No cache requests recorded on node {node}", metrics={"node": node})
        else:
            node_ratios.append((node, ratio))
            b.check(
                RULES["hit_ratio_pct"],
                ratio,
                message=f"Cache hit ratio on node {node} is {{value:.1f}}% (threshold {{threshold}}%)",
                metrics={"hit_count": hits, "miss_count": misses},
                impact="Reads fall through to remote storage",
                node=node,
            )

        capacity = to_int(pick(row, "disk_cache_capacity_bytes", "DISK_QUOTA_BYTES")) or 0
        used = to_int(pick(row, "disk_cache_bytes", "DISK_USED_BYTES")) or 0
        usage = ratio_pct(used, capacity)
        if usage is not None:
            b.check(
                RULES["capacity_usage_pct"],
                usage,
                message=f"Cache capacity on node {node} is {{value:.1f}}% used",
                metrics={"capacity_gb": round(capacity / 1024**3, 2), "used_gb": round(used / 1024**3, 2)},
                impact="Evictions rise as the cache fills",
                node=node,
            )

    if len(node_ratios) > 1:
        overall = ratio_pct(total_hits, total_requests)
        if overall is not None:
            b.check(
                RULES["overall_hit_ratio_pct"],
                overall,
                message="Cluster cache hit ratio is {value:.1f}%",
                metrics={"hit_count": total_hits, "requests": total_requests},
                impact="Query latency depends on remote storage",
            )
        mean, std = mean_and_stddev([r for _, r in node_ratios])
        dist = {"mean_hit_ratio": round(mean, 2), "std_dev": round(std, 2)}
        if b.check(
            RULES["node_hit_ratio_stddev"],
            std,
            message="Cache hit ratio differs widely across nodes (std dev {value:.1f}%)",
            metrics=dist,
            impact="Uneven data placement or a misbehaving node",
        ) is None:
            b.insight("cache_hit_ratio_distribution", "Cache hit ratio is consistent across nodes", metrics=dist)

    _hit_ratio_recommendation(b)
    if b.has_category("cache_capacity_critical", "cache_capacity_warning"):
        b.recommend(
            "HIGH" if b.has_category("cache_capacity_critical") else "MEDIUM",
            "cache_capacity_expansion",
            "Expand data cache capacity",
            actions=["Raise datacache_disk_size", "Add local disks to compute nodes"],
        )
    return b.build()


# ---------------------------------------------------------------------------
# analyze_cache_jitter (Prometheus range)
# ---------------------------------------------------------------------------


def jitter_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    time_range = validate_time_range(args.get("time_range") or DEFAULT_TIME_RANGE)
    step = step_for_time_range(time_range)
    w = rate_interval_for_step(step)
    hits = f"rate(fslib_open_cache_hits[{w}])"
    misses = f"rate(fslib_open_cache_misses[{w}])"
    return [
        QueryDescriptor(
            id="overall_hit_ratio",
            source_type="prometheus_range",
            statement=f"sum({hits}) / (sum({hits}) + sum({misses}))",
            time_range=time_range,
            step=step,
            required=True,
            description="Cluster hit ratio over time",
        ),
        QueryDescriptor(
            id="node_hit_ratio",
            source_type="prometheus_range",
            statement=f"{hits} / ({hits} + {misses})",
            time_range=time_range,
            step=step,
            description="Per-node hit ratio over time",
        ),
        QueryDescriptor(
            id="disk_size",
            source_type="prometheus_instant",
            statement="fslib_star_cache_disk_size",
            description="Cache disk usage",
        ),
    ]


def _pct_points(points: Sequence[float]) -> List[float]:
    # Ratios come back in [0, 1].
    return [p * 100 for p in points]


def analyze_jitter(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_cache_jitter")
    series = view.prom_series("overall_hit_ratio")
    points = _pct_points(series[0][1]) if series else []
    if not points:
        b.no_data("overall_hit_ratio", "cluster hit ratio series", view=view)
        return b.build()

    mean, std = mean_and_stddev(points)
    lo, hi = min(points), max(points)
    summary = {"mean": round(mean, 2), "min": round(lo, 2), "max": round(hi, 2), "std_dev": round(std, 2)}
    b.check(
        RULES["hit_ratio_pct"],
        mean,
        message="Average cache hit ratio is {value:.1f}% (threshold {threshold}%)",
        metrics=summary,
        impact="Reads fall through to remote storage",
    )
    b.check(
        RULES["hit_ratio_stddev"],
        std,
        message="Cache hit ratio fluctuates (std dev {value:.1f}%)",
        metrics=summary,
        impact="Intermittent query latency spikes",
    )
    b.check(
        RULES["hit_ratio_range"],
        hi - lo,
        message=f"Cache hit ratio ranged from {lo:.1f}% to {hi:.1f}%",
        metrics=summary,
        impact="Query performance is inconsistent",
    )

    third = len(points) // 3
    if third >= 1:
        head, _ = mean_and_stddev(points[:third])
        tail, _ = mean_and_stddev(points[-third:])
        if head - tail > DEGRADING_TREND_DROP:
            b.issue(
                "WARNING",
                "degrading_hit_ratio_trend",
                f"Cache hit ratio is falling ({head:.1f}% to {tail:.1f}%)",
                metrics={"start_mean": round(head, 2), "end_mean": round(tail, 2)},
                impact="Performance may keep degrading",
            )

    node_means: List[Tuple[str, float]] = []
    for labels, pts in view.prom_series("node_hit_ratio"):
        if pts:
            node_means.append((_node_label(labels), mean_and_stddev(_pct_points(pts))[0]))
    if len(node_means) > 1:
        spread = max(m for _, m in node_means) - min(m for _, m in node_means)
        b.check(
            RULES["node_mean_spread"],
            spread,
            message="Per-node average hit ratios differ by {value:.1f} points",
            metrics={"nodes": len(node_means)},
            impact="Load imbalance or a problem node",
        )
        b.insight(
            "node_hit_ratios",
            f"Average hit ratio for {len(node_means)} node(s)",
            details=[{"node": n, "mean": round(m, 2)} for n, m in sorted(node_means)],
        )

    disk = view.prom_vector("disk_size")
    if disk:
        b.insight(
            "cache_disk_usage",
            "Cache disk usage per node",
            details=[{"node": _node_label(d["metric"]), "bytes": d["value"]} for d in disk],
        )

    _hit_ratio_recommendation(b)
    if b.has_category("cache_hit_ratio_jitter", "wide_hit_ratio_range", "degrading_hit_ratio_trend"):
        b.recommend(
            "MEDIUM",
            "cache_stability",
            "Stabilize cache hit ratio",
            actions=[
                "Correlate dips with large scans or loads",
                "Isolate ad-hoc workloads with resource groups",
            ],
        )
    b.meta(time_range=args.get("time_range") or DEFAULT_TIME_RANGE)
    return b.build()


# ---------------------------------------------------------------------------
# analyze_metadata_cache (shared_data, Prometheus)
# ---------------------------------------------------------------------------


def metadata_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    time_range = validate_time_range(args.get("time_range") or DEFAULT_TIME_RANGE)
    out: List[QueryDescriptor] = [] if args.get("architecture") else [run_mode_descriptor()]
    return out + [
        QueryDescriptor(
            id="usage_percent",
            source_type="prometheus_range",
            statement="(lake_metacache_usage / lake_metacache_capacity) * 100",
            time_range=time_range,
            step=step_for_time_range(time_range),
            required=True,
            architecture_tag="shared_data",
            description="Metadata cache usage over time",
        ),
        QueryDescriptor(
            id="capacity",
            source_type="prometheus_instant",
            statement="lake_metacache_capacity",
            architecture_tag="shared_data",
            description="Metadata cache capacity",
        ),
        QueryDescriptor(
            id="used",
            source_type="prometheus_instant",
            statement="lake_metacache_usage",
            architecture_tag="shared_data",
            description="Metadata cache usage",
        ),
    ]


def analyze_metadata(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_metadata_cache")
    series = [(labels, pts) for labels, pts in view.prom_series("usage_percent") if pts]
    if not series:
        b.no_data("usage_percent", "metadata cache usage", view=view)
        return b.build()

    capacity = {_node_label(v["metric"]): v["value"] for v in view.prom_vector("capacity")}
    used = {_node_label(v["metric"]): v["value"] for v in view.prom_vector("used")}
    for labels, pts in sorted(series, key=lambda s: _node_label(s[0])):
        node = _node_label(labels)
        current = pts[-1]
        extra = {}
        if node in capacity:
            extra["capacity_mb"] = round(capacity[node] / 1024**2, 2)
        if node in used:
            extra["used_mb"] = round(used[node] / 1024**2, 2)
        b.check(
            RULES["metadata_cache_usage_pct"],
            current,
            message=f"Metadata cache on {node} is {{value:.1f}}% used",
            metrics=extra,
            impact="Metadata lookups fall back to remote storage",
            node=node,
        )
        b.check(
            RULES["metadata_cache_fluctuation"],
            max(pts) - min(pts),
            message=f"Metadata cache usage on {node} swings by {{value:.1f}} points",
            metrics={"min": round(min(pts), 2), "max": round(max(pts), 2)},
            impact="Bursts of metadata-heavy operations",
            node=node,
        )

    if b.has_category("metadata_cache_critical", "metadata_cache_warning"):
        b.recommend(
            "HIGH" if b.has_category("metadata_cache_critical") else "MEDIUM",
            "metadata_cache_capacity",
            "Relieve metadata cache pressure",
            actions=["Raise lake_metadata_cache_limit", "Check for tables with very many small partitions"],
        )
    return b.build()


class CacheExpert(BaseExpert):
    name = NAME
    version = "2.0.0"
    description = "Data cache hit ratio, capacity and jitter; metadata cache usage"
    rules = RULES

    def tool_specs(self) -> Sequence[ToolSpec]:
        return (
            ToolSpec("analyze_cache_performance", performance_manifest, analyze_performance, "Data cache health"),
            ToolSpec("analyze_cache_jitter", jitter_manifest, analyze_jitter, "Hit ratio stability over time"),
            ToolSpec(
                "analyze_metadata_cache",
                metadata_manifest,
                analyze_metadata,
                "Metadata cache usage (shared_data)",
                architecture="shared_data",
            ),
        )
