from __future__ import annotations


def _instant(value: float) -> dict:
    return {"status": "success", "data": {"resultType": "vector", "result": [{"metric": {}, "value": [1, str(value)]}]}}


def test_memory_usage_levels_and_limit_fallback() -> None:
    from doctor.experts.memory import MemoryExpert

    diag, recs = MemoryExpert().analyze(
        "analyze_memory",
        {
            "backends": [
                {"IP": "be1", "MemUsedPct": "96.00 %"},
                {"IP": "be2", "MemUsed": "45 GB", "MemLimit": "50 GB"},
                {"IP": "be3", "MemUsedPct": "81"},
                {"IP": "be4"},
            ],
            "compute_nodes": [{"IP": "cn1", "MemUsedPct": "10"}],
        },
        {},
    )
    by_node = {i.node: i.category for i in diag.all_issues()}
    assert by_node == {"be1": "memory_emergency", "be2": "critical_memory_usage", "be3": "high_memory_usage"}
    cats = [i.category for i in diag.insights]
    assert "no_data" in cats
    assert "mem_limit_unknown" in cats
    assert recs[0].category == "memory_relief"


def test_memory_configs_insight() -> None:
    from doctor.experts.memory import MemoryExpert

    diag, recs = MemoryExpert().analyze(
        "analyze_memory",
        {
            "backends": [{"IP": "be1", "MemUsedPct": "40"}],
            "memory_configs": [
                {"BE_ID": "1", "NAME": "mem_limit", "VALUE": "90%"},
                {"BE_ID": "2", "NAME": "mem_limit", "VALUE": "90%"},
            ],
        },
        {},
    )
    assert diag.total_issues == 0
    assert recs == []
    cfg = [i for i in diag.insights if i.category == "memory_configs"][0]
    assert cfg.details == [{"name": "mem_limit", "values": ["90%"]}]


def test_transaction_rates() -> None:
    from doctor.experts.transaction import TransactionExpert

    diag, recs = TransactionExpert().analyze(
        "analyze_transactions",
        {
            "commit_success": _instant(880),
            "commit_fail": _instant(120),
            "conflicts": _instant(0.5),
            "commit_latency_p99": _instant(1500),
            "databases": [{"SCHEMA_NAME": "sales"}],
        },
        {},
    )
    crit = [i.category for i in diag.criticals]
    warn = [i.category for i in diag.warnings]
    # 120 / 1000 = 12%
    assert crit == ["high_transaction_failure_rate"]
    # 0.5/s = 30/min; 1500 ms
    assert sorted(warn) == ["slow_transaction_commit", "transaction_conflicts"]
    assert [r.category for r in recs] == ["transaction_contention", "commit_latency"]


def test_transaction_missing_metrics_degrade_to_insights() -> None:
    from doctor.experts.transaction import TransactionExpert

    diag, recs = TransactionExpert().analyze("analyze_transactions", {"conflicts": {"error": "prometheus down"}}, {})
    assert diag.total_issues == 0
    assert recs == []
    no_data = {i.metrics["query_id"] for i in diag.insights if i.category == "no_data"}
    assert no_data == {"commit_success", "conflicts", "commit_latency_p99"}
