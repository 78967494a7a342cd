from __future__ import annotations

import pytest


class _Resp:
    def __init__(self, payload, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            import requests

            raise requests.exceptions.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def test_prom_instant_query_returns_envelope(monkeypatch) -> None:
    from doctor.providers.prom_provider import HttpPromBackend

    calls = []
    envelope = {"status": "success", "data": {"resultType": "vector", "result": []}}

    def fake_get(url, params=None, timeout=None):
        calls.append((url, params, timeout))
        return _Resp(envelope)

    monkeypatch.setattr("doctor.providers.prom_provider.requests.get", fake_get)
    out = HttpPromBackend("http://prom:9090/", timeout=7).query_instant("up")
    assert out == envelope
    url, params, timeout = calls[0]
    assert url == "http://prom:9090/api/v1/query"
    assert params["query"] == "up"
    assert timeout == 7


def test_prom_range_query_window_and_step(monkeypatch) -> None:
    from doctor.providers.prom_provider import HttpPromBackend

    seen = {}

    def fake_get(url, params=None, timeout=None):
        seen.update(params)
        return _Resp({"status": "success", "data": {"resultType": "matrix", "result": []}})

    monkeypatch.setattr("doctor.providers.prom_provider.requests.get", fake_get)
    backend = HttpPromBackend()
    backend.query_range("rate(x[1m])", "30m")
    assert seen["end"] - seen["start"] == 1800
    assert seen["step"] == "15s"

    backend.query_range("rate(x[1m])", "soon")
    assert seen["end"] - seen["start"] == 3600
    assert seen["step"] == "1m"

    backend.query_range("rate(x[1m])", "6h", "2m")
    assert seen["step"] == "2m"


@pytest.mark.parametrize(
    "response",
    [
        _Resp({"status": "error", "error": "parse error"}),
        _Resp({}, status_code=503),
        _Resp(ValueError("not json")),
    ],
)
def test_prom_failures_raise_backend_error(monkeypatch, response) -> None:
    from doctor.core.errors import BackendError
    from doctor.providers.prom_provider import HttpPromBackend

    monkeypatch.setattr("doctor.providers.prom_provider.requests.get", lambda *a, **k: response)
    with pytest.raises(BackendError):
        HttpPromBackend().query_instant("up")


def test_sql_backend_binds_positional_params() -> None:
    from sqlalchemy import create_engine

    from doctor.providers.sql_provider import StarRocksSqlBackend, bind_params

    assert bind_params(["a", 2]) == {"p0": "a", "p1": 2}
    backend = StarRocksSqlBackend(engine=create_engine("sqlite://"))
    rows = backend.execute("SELECT :p0 AS name, :p1 AS n", ["x'; DROP TABLE t; --", 3])
    assert rows == [{"name": "x'; DROP TABLE t; --", "n": 3}]
    backend.close()


def test_sql_backend_errors() -> None:
    from sqlalchemy import create_engine

    from doctor.core.errors import BackendError
    from doctor.providers.sql_provider import StarRocksSqlBackend

    with pytest.raises(BackendError):
        StarRocksSqlBackend(None)
    backend = StarRocksSqlBackend(engine=create_engine("sqlite://"))
    with pytest.raises(BackendError):
        backend.execute("SELECT * FROM no_such_table")


class _FakeSql:
    def execute(self, statement, params=()):
        from doctor.core.errors import BackendError

        if "boom" in statement:
            raise BackendError("Unknown table 'boom'")
        return [{"statement": statement, "params": list(params)}]


def test_live_supplier_records_failures_per_query() -> None:
    from doctor.core.models import QueryDescriptor
    from doctor.providers.resultset import LiveResultSupplier

    descriptors = [
        QueryDescriptor(id="ok", statement="SELECT 1", params=[1]),
        QueryDescriptor(id="bad", statement="SELECT * FROM boom"),
        QueryDescriptor(id="hit_ratio", source_type="prometheus_instant", statement="x"),
    ]
    out = LiveResultSupplier(sql=_FakeSql()).fetch(descriptors)
    assert out["ok"] == [{"statement": "SELECT 1", "params": [1]}]
    assert out["bad"] == {"error": "Unknown table 'boom'"}
    assert out["hit_ratio"] == {"error": "no Prometheus backend configured"}


def test_live_supplier_routes_range_queries() -> None:
    from doctor.core.models import QueryDescriptor
    from doctor.providers.resultset import LiveResultSupplier

    class FakeProm:
        def query_instant(self, query):
            return {"status": "success", "data": {"resultType": "vector", "result": [], "q": query}}

        def query_range(self, query, time_range=None, step=None):
            return {"status": "success", "data": {"resultType": "matrix", "result": [], "w": [time_range, step]}}

    out = LiveResultSupplier(prom=FakeProm()).fetch(
        [QueryDescriptor(id="trend", source_type="prometheus_range", statement="q", time_range="1h", step="1m")]
    )
    assert out["trend"]["data"]["w"] == ["1h", "1m"]


def test_static_supplier_only_serves_requested_ids() -> None:
    from doctor.core.models import QueryDescriptor
    from doctor.providers.resultset import StaticResultSupplier

    supplier = StaticResultSupplier({"a": [1], "b": [2], "c": [3]})
    out = supplier.fetch([QueryDescriptor(id="a", statement="x"), QueryDescriptor(id="z", statement="y")])
    assert out == {"a": [1]}
