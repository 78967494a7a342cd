from __future__ import annotations

import pytest


def test_result_view_treats_error_markers_as_absent() -> None:
    from doctor.core.errors import MissingRequiredResult
    from doctor.diagnostics.manifest import ResultView

    view = ResultView(
        {
            "ok": [{"a": 1}],
            "failed": {"error": "connection refused"},
            "prom_failed": {"status": "error", "error": "bad query"},
        },
        expert="storage",
    )
    assert view.has("ok")
    assert not view.has("failed")
    assert not view.has("prom_failed")
    assert not view.has("missing")
    assert view.error("failed") == "connection refused"
    assert view.rows("failed") == []
    with pytest.raises(MissingRequiredResult) as ei:
        view.require("failed")
    assert ei.value.query_id == "failed"
    assert ei.value.expert == "storage"


def test_rows_accept_list_or_rows_wrapper_and_case_insensitive_pick() -> None:
    from doctor.diagnostics.manifest import ResultView, pick

    view = ResultView({"a": [{"X": 1}, "junk"], "b": {"rows": [{"y": 2}]}})
    assert view.rows("a") == [{"X": 1}]
    assert view.first_value("b", "Y") == 2
    assert pick({"MaxDiskUsedPct": 5}, "maxdiskusedpct") == 5
    assert pick({}, "x", default="d") == "d"


def test_prometheus_accessors() -> None:
    from doctor.diagnostics.manifest import ResultView

    view = ResultView(
        {
            "vec": {
                "status": "success",
                "data": {"resultType": "vector", "result": [{"metric": {"instance": "a"}, "value": [1, "0.5"]}]},
            },
            "scalar": {"status": "success", "data": {"resultType": "scalar", "result": [1, "7"]}},
            "matrix": {
                "status": "success",
                "data": {"resultType": "matrix", "result": [{"metric": {}, "values": [[1, "1"], [2, "NaN"], [3, "3"]]}]},
            },
            "bare": [{"metric": {}, "value": [1, "2"]}],
        }
    )
    assert view.prom_vector("vec") == [{"metric": {"instance": "a"}, "value": 0.5}]
    assert view.prom_scalar("scalar") == 7.0
    assert view.prom_scalar("vec") == 0.5
    assert view.prom_scalar("bare") == 2.0
    assert view.prom_series("matrix") == [({}, [1.0, 3.0])]
    assert view.prom_scalar("missing") is None


def test_namespace_and_split_round_trip_ids() -> None:
    from doctor.core.models import QueryDescriptor
    from doctor.diagnostics.manifest import namespace_manifest, split_results

    descs = namespace_manifest("storage", [QueryDescriptor(id="backends", statement="SHOW BACKENDS")])
    assert descs[0].id == "storage.backends"
    assert descs[0].expert == "storage"

    split = split_results({"storage.backends": [1], "cache.x": 2, "other.y": 3, "noprefix": 4}, ["storage", "cache"])
    assert split == {"storage": {"backends": [1]}, "cache": {"x": 2}}

    with pytest.raises(ValueError):
        namespace_manifest("bad.name", descs)


def test_resolve_architecture_prefers_args_then_run_mode_row() -> None:
    from doctor.diagnostics.manifest import ResultView, resolve_architecture

    view = ResultView({"run_mode": [{"Key": "run_mode", "Value": "shared_data"}]})
    assert resolve_architecture(view, {}) == "shared_data"
    assert resolve_architecture(view, {"architecture": "shared_nothing"}) == "shared_nothing"
    assert resolve_architecture(ResultView({}), {}) is None


def test_topology_filter_keeps_untagged_and_matching() -> None:
    from doctor.core.models import QueryDescriptor
    from doctor.diagnostics.manifest import filter_for_topology

    descs = [
        QueryDescriptor(id="a", statement="s"),
        QueryDescriptor(id="b", statement="s", architecture_tag="shared_data"),
        QueryDescriptor(id="c", statement="s", architecture_tag="shared_nothing"),
    ]
    assert [d.id for d in filter_for_topology(descs, "shared_data")] == ["a", "b"]
    assert [d.id for d in filter_for_topology(descs, None)] == ["a", "b", "c"]


def test_diagnosis_builder_splits_by_severity_and_formats_messages() -> None:
    from doctor.diagnostics.manifest import DiagnosisBuilder
    from doctor.diagnostics.thresholds import above

    b = DiagnosisBuilder("storage", "t")
    rule = above("disk", warning=85, critical=95, category="disk")
    b.check(rule, 96.04, message="usage {value:.1f}% > {threshold}")
    b.check(rule, 86, message="weird {name}")
    b.issue("INFO", "note", "fyi")
    diag, recs = b.build()
    assert [i.message for i in diag.criticals] == ["usage 96.0% > 95"]
    assert diag.criticals[0].metrics == {"value": 96.04, "threshold": 95}
    assert [i.message for i in diag.warnings] == ["weird {name}"]
    assert [i.category for i in diag.issues] == ["note"]
    assert diag.total_issues == 3
    assert diag.metadata["expert"] == "storage"
    assert recs == []


def test_duplicate_manifest_ids_are_rejected() -> None:
    from doctor.core.models import QueryDescriptor
    from doctor.diagnostics.manifest import validate_manifest_ids

    with pytest.raises(ValueError):
        validate_manifest_ids([QueryDescriptor(id="a", statement="s"), QueryDescriptor(id="a", statement="t")])


def test_every_default_manifest_is_valid_and_bound() -> None:
    from doctor.diagnostics.registry import get_default_registry

    for expert in get_default_registry().experts:
        for tool in expert.tools:
            args = {"label": "load_1"} if tool == "analyze_load_failure" else {}
            descs = expert.build_manifest(tool, args)
            assert descs, f"{expert.name}.{tool}"
            for d in descs:
                if d.source_type == "sql":
                    for i in range(len(d.params)):
                        assert f":p{i}" in d.statement, f"{d.id} does not bind p{i}"
