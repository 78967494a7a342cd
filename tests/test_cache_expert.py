from __future__ import annotations


def _range(*values: float, metric: dict = None) -> dict:
    return {
        "status": "success",
        "data": {
            "resultType": "matrix",
            "result": [{"metric": metric or {}, "values": [[i, str(v)] for i, v in enumerate(values)]}],
        },
    }


def test_single_node_low_hit_ratio_is_critical() -> None:
    from doctor.experts.cache import CacheExpert

    diag, recs = CacheExpert().analyze(
        "analyze_cache_performance", {"cache_metrics": [{"BE_ID": "10001", "hit_count": 20, "miss_count": 80}]}, {}
    )
    assert [(i.category, i.severity) for i in diag.all_issues()] == [("low_cache_hit_ratio", "CRITICAL")]
    assert diag.criticals[0].metrics["value"] == 20.0
    assert recs[0].category == "cache_hit_ratio_optimization"


def test_capacity_and_node_variance() -> None:
    from doctor.experts.cache import CacheExpert

    gib = 1024**3
    diag, recs = CacheExpert().analyze(
        "analyze_cache_performance",
        {
            "cache_metrics": [
                {"BE_ID": "1", "HIT_COUNT": 95, "MISS_COUNT": 5, "DISK_QUOTA_BYTES": 100 * gib, "DISK_USED_BYTES": 96 * gib},
                {"BE_ID": "2", "HIT_COUNT": 55, "MISS_COUNT": 45, "DISK_QUOTA_BYTES": 100 * gib, "DISK_USED_BYTES": 10 * gib},
            ]
        },
        {},
    )
    cats = {(i.category, i.severity) for i in diag.all_issues()}
    assert ("cache_capacity_critical", "CRITICAL") in cats
    # node ratios 95 / 55 -> std dev 20
    assert ("cache_hit_ratio_variance", "WARNING") in cats
    assert not any(c == "low_cache_hit_ratio" for c, _ in cats)
    assert any(r.category == "cache_capacity_expansion" and r.priority == "HIGH" for r in recs)


def test_zero_requests_is_no_data_not_zero_percent() -> None:
    from doctor.experts.cache import CacheExpert

    diag, _ = CacheExpert().analyze(
        "analyze_cache_performance", {"cache_metrics": [{"BE_ID": "1", "hit_count": 0, "miss_count": 0}]}, {}
    )
    assert diag.total_issues == 0
    assert diag.insights[0].category == "no_data"


def test_jitter_detects_fluctuation_and_trend() -> None:
    from doctor.experts.cache import CacheExpert

    diag, recs = CacheExpert().analyze(
        "analyze_cache_jitter",
        {"overall_hit_ratio": _range(0.9, 0.9, 0.9, 0.6, 0.5, 0.4)},
        {"time_range": "1h"},
    )
    cats = {i.category for i in diag.warnings}
    assert {"cache_hit_ratio_jitter", "wide_hit_ratio_range", "degrading_hit_ratio_trend"} <= cats
    assert any(r.category == "cache_stability" for r in recs)


def test_jitter_node_spread() -> None:
    from doctor.experts.cache import CacheExpert

    node_series = {
        "status": "success",
        "data": {
            "resultType": "matrix",
            "result": [
                {"metric": {"instance": "be1:8040"}, "values": [[1, "0.95"], [2, "0.95"]]},
                {"metric": {"instance": "be2:8040"}, "values": [[1, "0.60"], [2, "0.60"]]},
            ],
        },
    }
    diag, _ = CacheExpert().analyze(
        "analyze_cache_jitter", {"overall_hit_ratio": _range(0.8, 0.8), "node_hit_ratio": node_series}, {}
    )
    assert [i.category for i in diag.warnings] == ["node_hit_ratio_imbalance"]


def test_jitter_requires_overall_series() -> None:
    import pytest

    from doctor.core.errors import MissingRequiredResult
    from doctor.experts.cache import CacheExpert

    with pytest.raises(MissingRequiredResult):
        CacheExpert().analyze("analyze_cache_jitter", {"overall_hit_ratio": {"status": "error", "error": "x"}}, {})


def test_jitter_manifest_rejects_bad_time_range() -> None:
    import pytest

    from doctor.core.errors import UnsafeIdentifier
    from doctor.experts.cache import CacheExpert

    descs = CacheExpert().build_manifest("analyze_cache_jitter", {"time_range": "12h"})
    assert descs[0].step == "5m"
    assert "[1200s]" in descs[0].statement
    with pytest.raises(UnsafeIdentifier):
        CacheExpert().build_manifest("analyze_cache_jitter", {"time_range": "1h) or vector(1"})


def test_metadata_cache_usage() -> None:
    from doctor.experts.cache import CacheExpert

    diag, recs = CacheExpert().analyze(
        "analyze_metadata_cache",
        {"usage_percent": _range(70, 75, 92, metric={"instance": "cn1"})},
        {"architecture": "shared_data"},
    )
    cats = {(i.category, i.severity) for i in diag.all_issues()}
    assert cats == {("metadata_cache_critical", "CRITICAL"), ("metadata_cache_fluctuation", "WARNING")}
    assert recs[0].priority == "HIGH"

    diag, _ = CacheExpert().analyze("analyze_metadata_cache", {}, {"architecture": "shared_nothing"})
    assert diag.status == "not_applicable"
