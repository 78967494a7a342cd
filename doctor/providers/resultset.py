"""Result suppliers: turn a manifest into a ResultSet.

- `StaticResultSupplier`: results executed elsewhere (client mode, fixtures)
- `LiveResultSupplier`: executes descriptors against StarRocks / Prometheus (direct mode)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, runtime_checkable

from doctor.core.errors import BackendError
from doctor.core.models import QueryDescriptor, ResultSet
from doctor.providers.prom_provider import PromBackend
from doctor.providers.sql_provider import SqlBackend

logger = logging.getLogger(__name__)


@runtime_checkable
class ResultSupplier(Protocol):
    def fetch(self, descriptors: Sequence[QueryDescriptor]) -> ResultSet: ...


class StaticResultSupplier:
    """Serves a pre-computed ResultSet; ids missing from it are simply absent."""

    def __init__(self, results: Optional[Mapping[str, Any]] = None) -> None:
        self.results: Dict[str, Any] = dict(results or {})

    def fetch(self, descriptors: Sequence[QueryDescriptor]) -> ResultSet:
        return {d.id: self.results[d.id] for d in descriptors if d.id in self.results}


class LiveResultSupplier:
    """
    Executes each descriptor against its backend, in manifest order.

    A failed query is recorded as `{"error": "..."}` under its id and the rest still run;
    whether that is fatal is decided by the analysis (required vs optional).
    """

    def __init__(self, sql: Optional[SqlBackend] = None, prom: Optional[PromBackend] = None) -> None:
        self.sql = sql
        self.prom = prom

    def _fetch_one(self, d: QueryDescriptor) -> Any:
        if d.source_type == "sql":
            if self.sql is None:
                raise BackendError("no SQL backend configured")
            return self.sql.execute(d.statement, d.params)
        if self.prom is None:
            raise BackendError("no Prometheus backend configured")
        if d.source_type == "prometheus_range":
            return self.prom.query_range(d.statement, d.time_range, d.step)
        return self.prom.query_instant(d.statement)

    def fetch(self, descriptors: Sequence[QueryDescriptor]) -> ResultSet:
        out: ResultSet = {}
        for d in descriptors:
            try:
                out[d.id] = self._fetch_one(d)
            except BackendError as e:
                logger.warning(f"Query {d.id} failed: {e}")
                out[d.id] = {"error": str(e)}
        return out
