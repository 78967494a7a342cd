"""Typed failures raised by manifests, analysis functions and backends."""

from __future__ import annotations

from typing import Optional


class DoctorError(Exception):
    """Base class for all expected diagnostic failures."""


class MissingRequiredResult(DoctorError):
    def __init__(self, query_id: str, *, expert: Optional[str] = None) -> None:
        self.query_id = query_id
        self.expert = expert
        where = f" for expert '{expert}'" if expert else ""
        super().__init__(f"missing required result '{query_id}'{where}")


class UnknownTool(DoctorError):
    def __init__(self, tool: str, *, expert: Optional[str] = None) -> None:
        self.tool = tool
        self.expert = expert
        where = f" by expert '{expert}'" if expert else ""
        super().__init__(f"tool '{tool}' is not handled{where}")


class UnknownExpert(DoctorError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"no expert registered as '{name}'")


class ArchitectureMismatch(DoctorError):
    """Tool invoked against an incompatible deployment topology (becomes a not_applicable Diagnosis)."""

    def __init__(self, required: str, actual: Optional[str]) -> None:
        self.required = required
        self.actual = actual
        super().__init__(f"requires {required} architecture, cluster is {actual or 'unknown'}")


class InvalidArguments(DoctorError):
    pass


class UnsafeIdentifier(InvalidArguments):
    def __init__(self, field: str, value: object) -> None:
        self.field = field
        self.value = value
        super().__init__(f"rejected value for '{field}': {value!r}")


class BackendError(DoctorError):
    """Transport/execution failure in a data-acquisition backend."""
