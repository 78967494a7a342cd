"""Ordered expert registry; registry order is the canonical scope order."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from doctor.core.errors import UnknownExpert
from doctor.core.models import ExpertInfo
from doctor.diagnostics.base import Expert
from doctor.diagnostics.manifest import NAMESPACE_SEP


@dataclass
class ExpertRegistry:
    experts: List[Expert] = field(default_factory=list)

    def register(self, expert: Expert) -> None:
        name = getattr(expert, "name", "")
        if not name or NAMESPACE_SEP in name:
            raise ValueError(f"invalid expert name: {name!r}")
        if name in self.names():
            raise ValueError(f"expert already registered: {name}")
        self.experts.append(expert)

    def names(self) -> List[str]:
        return [e.name for e in self.experts]

    def get(self, name: str) -> Expert:
        for e in self.experts:
            if e.name == name:
                return e
        raise UnknownExpert(name)

    def normalize_scope(self, scope: Optional[Iterable[str]]) -> List[str]:
        """
        Registry-ordered, de-duplicated scope. Empty/None means every registered expert.

        Raises UnknownExpert for names that are not registered.
        """
        requested = [str(s).strip() for s in (scope or []) if str(s).strip()]
        if not requested:
            return self.names()
        for name in requested:
            self.get(name)
        wanted = set(requested)
        return [n for n in self.names() if n in wanted]

    def tool_owner(self, tool: str) -> Optional[Expert]:
        for e in self.experts:
            if tool in e.tools:
                return e
        return None

    def describe(self) -> List[ExpertInfo]:
        out: List[ExpertInfo] = []
        for e in self.experts:
            info = getattr(e, "info", None)
            if callable(info):
                out.append(info())
                continue
            out.append(
                ExpertInfo(
                    name=e.name,
                    version=e.version,
                    description=e.description,
                    tools=list(e.tools),
                    default_tool=e.default_tool,
                )
            )
        return out


_DEFAULT_REGISTRY: ExpertRegistry | None = None


def get_default_registry() -> ExpertRegistry:
    global _DEFAULT_REGISTRY
    if _DEFAULT_REGISTRY is not None:
        return _DEFAULT_REGISTRY
    reg = ExpertRegistry()
    # Explicit composition (single source of truth lives in `doctor.experts`).
    from doctor.experts import DEFAULT_EXPERT_CLASSES  # noqa: WPS433

    for cls in DEFAULT_EXPERT_CLASSES:
        try:
            reg.register(cls())
        except Exception as e:
            raise RuntimeError(f"Failed to register expert {cls}: {e}") from e

    _DEFAULT_REGISTRY = reg
    return reg
