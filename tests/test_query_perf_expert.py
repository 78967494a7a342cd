from __future__ import annotations

import pytest

_GIB = 1024**3
_QUERY_ID = "3b1a7c2e-1f2d-11ef-9c4b-0242ac110002"


def _vector(samples: dict) -> dict:
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [{"metric": {"instance": i}, "value": [1, str(v)]} for i, v in samples.items()],
        },
    }


def _audit_row(qid: str, ms: int, *, scan_gb: float = 0, mem_gb: float = 0, user: str = "bi") -> dict:
    return {
        "queryId": qid,
        "queryTime": ms,
        "scanRows": 1000,
        "scanBytes": int(scan_gb * _GIB),
        "memCostBytes": int(mem_gb * _GIB),
        "state": "EOF",
        "db": "sales",
        "user": user,
        "stmt_preview": "SELECT ...",
    }


def test_slow_query_manifest_defaults_and_bounds() -> None:
    from doctor.core.errors import InvalidArguments
    from doctor.experts.query_perf import QueryPerfExpert

    expert = QueryPerfExpert()
    assert expert.default_tool == "analyze_slow_queries"
    audit, slow = expert.build_manifest("analyze_slow_queries", {})
    assert audit.required and audit.params == ["starrocks_audit_db__", "starrocks_audit_tbl__"]
    assert slow.params == [60, 10000, "EOF", 100]
    assert "`queryTime` >= :p1" in slow.statement

    (_, slow) = expert.build_manifest("analyze_slow_queries", {"slow_threshold_ms": 2500, "limit": 20})
    assert slow.params[1] == 2500 and slow.params[3] == 20
    with pytest.raises(InvalidArguments):
        expert.build_manifest("analyze_slow_queries", {"slow_threshold_ms": 0})


def test_slow_queries_are_counted_and_classified() -> None:
    from doctor.experts.query_perf import QueryPerfExpert

    rows = [_audit_row(f"q{i}", 15_000) for i in range(12)]
    rows.append(_audit_row("q-big", 400_000, scan_gb=20, mem_gb=12, user="etl"))
    diag, recs = QueryPerfExpert().analyze(
        "analyze_slow_queries", {"audit_table": [{"TABLE_NAME": "starrocks_audit_tbl__"}], "slow_queries": rows}, {}
    )
    assert [i.category for i in diag.criticals] == ["runaway_query"]
    assert diag.criticals[0].metrics["queries"] == ["q-big"]
    assert [i.category for i in diag.warnings] == ["frequent_slow_queries", "large_scan_query", "high_query_memory"]

    summary = [i for i in diag.insights if i.category == "slow_query_summary"][0]
    assert summary.metrics["total_slow_queries"] == 13
    assert summary.metrics["max_query_time_ms"] == 400_000
    assert summary.details[0]["query_id"] == "q-big"
    by_user = [i for i in diag.insights if i.category == "slow_queries_by_user"][0]
    assert by_user.details[0] == {"user": "bi", "count": 12}

    assert {r.category for r in recs} == {"slow_query_optimization", "scan_reduction", "query_memory"}
    assert [r.priority for r in recs if r.category == "slow_query_optimization"] == ["HIGH"]


def test_missing_audit_table_is_explained_not_scored() -> None:
    from doctor.core.errors import MissingRequiredResult
    from doctor.experts.query_perf import QueryPerfExpert

    expert = QueryPerfExpert()
    diag, recs = expert.analyze("analyze_slow_queries", {"audit_table": []}, {})
    assert diag.total_issues == 0
    assert diag.insights[0].category == "audit_log_unavailable"
    assert [r.category for r in recs] == ["audit_log_setup"]

    with pytest.raises(MissingRequiredResult):
        expert.analyze("analyze_slow_queries", {}, {})


def test_no_slow_queries_in_window() -> None:
    from doctor.experts.query_perf import QueryPerfExpert

    diag, recs = QueryPerfExpert().analyze(
        "analyze_slow_queries", {"audit_table": [{"TABLE_NAME": "t"}], "slow_queries": []}, {"slow_threshold_ms": 5000}
    )
    assert diag.total_issues == 0
    assert recs == []
    assert diag.insights[0].category == "no_slow_queries"
    assert diag.metadata["slow_threshold_ms"] == 5000


def test_latency_manifest_targets_fe_quantiles() -> None:
    from doctor.core.errors import UnsafeIdentifier
    from doctor.experts.query_perf import QueryPerfExpert

    expert = QueryPerfExpert()
    descs = expert.build_manifest("analyze_query_latency", {})
    assert [d.id for d in descs] == ["qps", "latency_p50", "latency_p90", "latency_p95", "latency_p99", "latency_p999"]
    assert [d.id for d in descs if d.required] == ["latency_p99"]
    assert all(d.source_type == "prometheus_instant" for d in descs)
    p99 = descs[4]
    assert p99.statement == 'sum(starrocks_fe_query_latency_ms{quantile="0.99"}) by (instance)'

    scoped = expert.build_manifest("analyze_query_latency", {"cluster_name": "sr_prod"})
    assert 'job="sr_prod", quantile="0.99"' in scoped[4].statement
    with pytest.raises(UnsafeIdentifier):
        expert.build_manifest("analyze_query_latency", {"cluster_name": 'x"} or vector(1)'})


def test_latency_quantiles_are_checked_on_the_fe_average() -> None:
    from doctor.experts.query_perf import QueryPerfExpert

    diag, recs = QueryPerfExpert().analyze(
        "analyze_query_latency",
        {
            "qps": _vector({"fe1": 10, "fe2": 5}),
            "latency_p50": _vector({"fe1": 300, "fe2": 200}),
            "latency_p95": _vector({"fe1": 2000, "fe2": 2000}),
            "latency_p99": _vector({"fe1": 12000, "fe2": 9000}),
        },
        {},
    )
    # p99 average is 10500 ms; p95 stays under its 3 s limit.
    assert [i.category for i in diag.criticals] == ["high_p99_latency"]
    assert diag.criticals[0].metrics["max_ms"] == 12000
    assert diag.warnings == []
    table = [i for i in diag.insights if i.category == "query_latency_by_instance"][0]
    assert table.metrics == {"total_qps": 15.0}
    assert table.details[0] == {"instance": "fe1", "p50": 300.0, "p95": 2000.0, "p99": 12000.0, "qps": 10.0}
    assert recs[0].category == "latency_optimization"
    assert recs[0].priority == "HIGH"


def test_latency_without_samples_is_no_data() -> None:
    from doctor.experts.query_perf import QueryPerfExpert

    diag, recs = QueryPerfExpert().analyze("analyze_query_latency", {"latency_p99": _vector({})}, {})
    assert diag.total_issues == 0
    assert recs == []
    assert diag.insights[0].category == "no_data"


def test_profile_requires_a_well_formed_query_id() -> None:
    from doctor.core.errors import InvalidArguments, UnsafeIdentifier
    from doctor.experts.query_perf import QueryPerfExpert

    expert = QueryPerfExpert()
    with pytest.raises(InvalidArguments):
        expert.build_manifest("analyze_query_profile", {})
    with pytest.raises(UnsafeIdentifier):
        expert.build_manifest("analyze_query_profile", {"query_id": "x'); DROP TABLE t; --"})
    descs = expert.build_manifest("analyze_query_profile", {"query_id": _QUERY_ID})
    assert descs[1].params == [_QUERY_ID]
    assert descs[1].required


def test_profile_summary_flags_long_queries() -> None:
    from doctor.experts.query_perf import QueryPerfExpert

    profile = "\n".join(
        [
            "Query:",
            "  Summary:",
            f"     - Query ID: {_QUERY_ID}",
            "     - Total: 1m5s",
            "     - Query State: Finished",
            "  Execution:",
            "     - QueryPeakMemoryUsagePerNode: 2.1 GB",
            "     - QuerySpillBytes: 0.000 B",
        ]
    )
    diag, recs = QueryPerfExpert().analyze(
        "analyze_query_profile",
        {
            "profile_enabled": [{"Variable_name": "enable_profile", "Value": "true"}],
            "query_profile": [{"profile": profile}],
        },
        {"query_id": _QUERY_ID},
    )
    assert [i.category for i in diag.criticals] == ["long_running_query"]
    summary = [i for i in diag.insights if i.category == "query_profile_summary"][0]
    assert summary.metrics["total_time_ms"] == 65000.0
    assert summary.metrics["query_state"] == "Finished"
    assert summary.metrics["peak_memory"] == "2.1 GB"
    assert "query_spilled" not in {i.category for i in diag.insights}
    assert recs[0].category == "slow_query_optimization"


def test_missing_profile_suggests_enabling_it() -> None:
    from doctor.experts.query_perf import QueryPerfExpert

    diag, recs = QueryPerfExpert().analyze(
        "analyze_query_profile",
        {
            "profile_enabled": [{"Variable_name": "enable_profile", "Value": "false"}],
            "query_profile": [{"profile": ""}],
        },
        {"query_id": _QUERY_ID},
    )
    assert diag.insights[0].category == "profile_unavailable"
    assert diag.insights[0].metrics["enable_profile"] is False
    assert [r.category for r in recs] == ["enable_profile"]


def test_profile_duration_parsing() -> None:
    from doctor.experts.query_perf import profile_duration_ms

    assert profile_duration_ms("1m2s300ms") == 62300.0
    assert profile_duration_ms("850us") == pytest.approx(0.85)
    assert profile_duration_ms("1h") == 3_600_000.0
    assert profile_duration_ms("") is None


def test_query_perf_joins_coordinated_runs() -> None:
    from doctor.diagnostics.coordinator import ExpertCoordinator

    c = ExpertCoordinator()
    ids = [d.id for d in c.build_manifest(["query_perf", "storage"], {})]
    assert ids[-2:] == ["query_perf.audit_table", "query_perf.slow_queries"]

    report = c.analyze(
        ["query_perf"],
        {"query_perf.audit_table": [{"TABLE_NAME": "t"}], "query_perf.slow_queries": []},
    )
    assert report.contributions() == {"query_perf": "succeeded"}
    assert report.aggregate.score == 100
