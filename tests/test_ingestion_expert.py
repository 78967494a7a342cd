from __future__ import annotations

import pytest


def _summary(total: int, success: int, failed: int) -> list:
    return [{"total_jobs": total, "success_jobs": success, "failed_jobs": failed}]


@pytest.mark.parametrize(
    "failed,category",
    [
        (5, None),
        (6, "moderate_failure_rate"),
        (21, "elevated_failure_rate"),
        (51, "high_failure_rate"),
    ],
)
def test_failure_rate_levels(failed, category) -> None:
    from doctor.experts.ingestion import IngestionExpert

    diag, _ = IngestionExpert().analyze(
        "analyze_ingestion_health", {"load_summary": _summary(100, 100 - failed, failed)}, {}
    )
    cats = [i.category for i in diag.all_issues()]
    assert cats == ([] if category is None else [category])


def test_no_recent_loads_is_not_zero_percent() -> None:
    from doctor.experts.ingestion import IngestionExpert

    diag, recs = IngestionExpert().analyze("analyze_ingestion_health", {"load_summary": _summary(0, 0, 0)}, {})
    assert diag.total_issues == 0
    assert any(i.category == "no_recent_loads" for i in diag.insights)
    assert recs == []


def test_pending_backlog_and_failure_breakdown() -> None:
    from doctor.experts.ingestion import IngestionExpert

    diag, recs = IngestionExpert().analyze(
        "analyze_ingestion_health",
        {
            "load_summary": _summary(100, 98, 2),
            "pending_loads": [{"pending_jobs": 120}],
            "failed_loads": [
                {"LABEL": "l1", "STATE": "CANCELLED", "ERROR_MSG": "Memory limit exceeded on BE"},
                {"LABEL": "l2", "STATE": "CANCELLED", "ERROR_MSG": "Reached timeout=300000ms @user"},
            ],
        },
        {},
    )
    assert [i.category for i in diag.criticals] == ["load_queue_backlog"]
    assert [i.category for i in diag.warnings] == ["load_failures_resource"]
    breakdown = [i for i in diag.insights if i.category == "load_failure_breakdown"][0]
    assert breakdown.metrics == {"resource": 1, "timeout": 1}
    assert {r.category for r in recs} == {"failure_investigation", "load_scheduling", "resource_planning"}


def test_import_frequency() -> None:
    from doctor.experts.ingestion import IngestionExpert

    expert = IngestionExpert()
    descs = expert.build_manifest("analyze_table_import_frequency", {"days": 1, "database_name": "sales"})
    assert descs[0].params == [1, "sales"]

    diag, recs = expert.analyze(
        "analyze_table_import_frequency",
        {"load_frequency": [{"DATABASE_NAME": "sales", "TABLE_NAME": "orders", "load_count": 2400}]},
        {"days": 1},
    )
    # 2400 loads / 24h = 100 per hour
    assert [i.category for i in diag.warnings] == ["high_import_frequency"]
    assert recs[0].category == "load_batching"


def test_load_failure_requires_a_valid_label() -> None:
    from doctor.core.errors import InvalidArguments, UnsafeIdentifier
    from doctor.experts.ingestion import IngestionExpert

    expert = IngestionExpert()
    with pytest.raises(InvalidArguments):
        expert.build_manifest("analyze_load_failure", {})
    with pytest.raises(UnsafeIdentifier):
        expert.build_manifest("analyze_load_failure", {"label": "a b; drop"})
    descs = expert.build_manifest("analyze_load_failure", {"label": "load_2024-01-01"})
    assert descs[0].params == ["load_2024-01-01"]


def test_load_failure_can_be_looked_up_by_txn_id() -> None:
    from doctor.core.errors import InvalidArguments
    from doctor.experts.ingestion import IngestionExpert

    expert = IngestionExpert()
    (desc,) = expert.build_manifest("analyze_load_failure", {"txn_id": 12345})
    assert desc.params == [12345]
    assert "WHERE TXN_ID = :p0 " in desc.statement

    (desc,) = expert.build_manifest(
        "analyze_load_failure", {"label": "l1", "txn_id": "77", "database_name": "sales"}
    )
    assert desc.params == ["l1", 77, "sales"]
    assert "LABEL = :p0 AND TXN_ID = :p1 AND DATABASE_NAME = :p2" in desc.statement

    with pytest.raises(InvalidArguments):
        expert.build_manifest("analyze_load_failure", {"txn_id": 0})

    diag, _ = expert.analyze("analyze_load_failure", {"load_job": []}, {"txn_id": 12345})
    assert diag.insights[0].category == "no_data"
    assert "txn_id 12345" in diag.insights[0].message


def test_load_failure_classification() -> None:
    from doctor.experts.ingestion import IngestionExpert

    diag, recs = IngestionExpert().analyze(
        "analyze_load_failure",
        {
            "load_job": [
                {
                    "LABEL": "l1",
                    "STATE": "CANCELLED",
                    "TYPE": "BROKER",
                    "ERROR_MSG": "too many filtered rows",
                    "FILTERED_ROWS": 42,
                }
            ]
        },
        {"label": "l1"},
    )
    assert [i.category for i in diag.warnings] == ["load_failure_data_quality"]
    cls = [i for i in diag.insights if i.category == "load_failure_classification"][0]
    assert cls.metrics == {"category": "data_quality", "method": "rule"}
    assert "42 row(s) filtered" in cls.details[0]["notes"]
    assert recs[0].priority == "MEDIUM"


def test_load_failure_for_running_job_is_informational() -> None:
    from doctor.experts.ingestion import IngestionExpert

    diag, recs = IngestionExpert().analyze(
        "analyze_load_failure", {"load_job": [{"LABEL": "l1", "STATE": "LOADING"}]}, {"label": "l1"}
    )
    assert diag.total_issues == 0
    assert recs == []
    assert diag.insights[0].category == "load_not_failed"
