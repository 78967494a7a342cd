"""Transaction expert: commit failure rate, conflicts and commit latency (Prometheus)."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from doctor.core.models import QueryDescriptor
from doctor.diagnostics.base import AnalysisOutput, BaseExpert, ToolSpec
from doctor.diagnostics.manifest import DiagnosisBuilder, ResultView
from doctor.diagnostics.thresholds import MetricRule, Threshold, ratio_pct, rule_table

NAME = "transaction"

RULES = rule_table(
    MetricRule(
        "commit_failure_rate_pct",
        (
            Threshold("CRITICAL", ">", 10),
            Threshold("WARNING", ">", 5),
        ),
        category="high_transaction_failure_rate",
    ),
    MetricRule(
        "conflicts_per_minute",
        (
            Threshold("CRITICAL", ">", 50),
            Threshold("WARNING", ">", 10),
        ),
        category="transaction_conflicts",
    ),
    MetricRule(
        "commit_latency_p99_ms",
        (
            Threshold("CRITICAL", ">", 5000),
            Threshold("WARNING", ">", 1000),
        ),
        category="slow_transaction_commit",
    ),
)


def transaction_manifest(args: Dict[str, Any]) -> List[QueryDescriptor]:
    return [
        QueryDescriptor(
            id="databases",
            statement=(
                "SELECT SCHEMA_NAME FROM information_schema.schemata WHERE SCHEMA_NAME NOT IN (:p0, :p1, :p2)"
            ),
            params=["information_schema", "_statistics_", "sys"],
            description="User databases",
        ),
        QueryDescriptor(
            id="commit_success",
            source_type="prometheus_instant",
            statement='sum(increase(transaction_commit{status="success"}[5m]))',
            description="Successful commits (5m)",
        ),
        QueryDescriptor(
            id="commit_fail",
            source_type="prometheus_instant",
            statement='sum(increase(transaction_commit{status="failed"}[5m]))',
            description="Failed commits (5m)",
        ),
        QueryDescriptor(
            id="conflicts",
            source_type="prometheus_instant",
            statement="sum(rate(transaction_conflict_total[1m]))",
            description="Conflict rate (per second)",
        ),
        QueryDescriptor(
            id="commit_latency_p99",
            source_type="prometheus_instant",
            statement="histogram_quantile(0.99, sum(rate(transaction_commit_latency_bucket[5m])) by (le))",
            description="p99 commit latency (ms)",
        ),
    ]


def analyze_transactions(view: ResultView, args: Dict[str, Any]) -> AnalysisOutput:
    b = DiagnosisBuilder(NAME, "analyze_transactions")

    ok = view.prom_scalar("commit_success")
    failed = view.prom_scalar("commit_fail")
    if ok is None and failed is None:
        b.no_data("commit_success", "transaction commit counters", view=view)
    else:
        total = (ok or 0.0) + (failed or 0.0)
        rate = ratio_pct(failed or 0.0, total)
        if rate is None:
            b.insight("no_recent_transactions", "No transaction commits in the last 5 minutes")
        else:
            b.check(
                RULES["commit_failure_rate_pct"],
                rate,
                message="Transaction commit failure rate is {value:.1f}% (threshold {threshold}%)",
                metrics={"committed": round(ok or 0.0), "failed": round(failed or 0.0)},
                impact="Loads and DML are being rolled back",
            )

    per_sec = view.prom_scalar("conflicts")
    if per_sec is None:
        b.no_data("conflicts", "transaction conflicts", view=view)
    else:
        b.check(
            RULES["conflicts_per_minute"],
            per_sec * 60,
            message="{value:.0f} transaction conflicts per minute",
            impact="Concurrent writers to the same partitions retry or fail",
        )

    latency = view.prom_scalar("commit_latency_p99")
    if latency is None:
        b.no_data("commit_latency_p99", "commit latency", view=view)
    else:
        b.check(
            RULES["commit_latency_p99_ms"],
            latency,
            message="p99 commit latency is {value:.0f} ms (threshold {threshold} ms)",
            impact="Publish delays make new data visible late",
        )

    dbs = view.rows("databases")
    if dbs:
        b.insight("databases", f"{len(dbs)} user database(s)", metrics={"count": len(dbs)})

    if b.has_category("high_transaction_failure_rate", "transaction_conflicts"):
        b.recommend(
            "HIGH" if b.has_category("high_transaction_failure_rate") else "MEDIUM",
            "transaction_contention",
            "Reduce transaction failures and conflicts",
            actions=[
                "Serialize writers that target the same partitions",
                "Check SHOW PROC '/transactions/<db>/running' for stuck transactions",
            ],
        )
    if b.has_category("slow_transaction_commit"):
        b.recommend(
            "MEDIUM",
            "commit_latency",
            "Investigate slow commits",
            actions=["Check FE edit log latency", "Check publish version timeouts on BE"],
        )
    return b.build()


class TransactionExpert(BaseExpert):
    name = NAME
    version = "2.0.0"
    description = "Transaction commit failures, conflicts and latency"
    rules = RULES

    def tool_specs(self) -> Sequence[ToolSpec]:
        return (ToolSpec("analyze_transactions", transaction_manifest, analyze_transactions, "Transaction health"),)
