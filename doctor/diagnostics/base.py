"""Expert contract and the tool-dispatching base class the concrete experts share."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from doctor.core.errors import UnknownTool
from doctor.core.models import Architecture, Diagnosis, ExpertInfo, QueryDescriptor, Recommendation, ResultSet

AnalysisOutput = Tuple[Diagnosis, List[Recommendation]]


class Expert(Protocol):
    """
    Diagnostic expert contract.

    Experts are designed to be:
    - connection-free (manifests describe data, suppliers fetch it)
    - deterministic and explainable (same results in, same Diagnosis out)
    - isolated (an expert never reads another expert's results or Diagnosis)
    """

    name: str
    version: str
    description: str
    rules: Mapping[str, Any]

    @property
    def tools(self) -> List[str]: ...

    @property
    def default_tool(self) -> str: ...

    def build_manifest(self, tool: str, args: Dict[str, Any]) -> List[QueryDescriptor]:
        """Ordered data requests for one tool invocation. Must not touch a live connection."""

    def analyze(self, tool: str, results: ResultSet, args: Dict[str, Any]) -> AnalysisOutput:
        """
        Classify the results of this expert's manifest.

        Raises MissingRequiredResult / UnknownTool; everything else degrades to insights.
        """


@dataclass(frozen=True)
class ToolSpec:
    name: str
    manifest: Callable[[Dict[str, Any]], List[QueryDescriptor]]
    # Receives a ResultView over this expert's slice of the results.
    analyze: Callable[[Any, Dict[str, Any]], AnalysisOutput]
    description: str = ""
    # Tool only meaningful on this topology; other topologies yield not_applicable.
    architecture: Optional[Architecture] = None


class BaseExpert:
    """Tool dispatch shared by the concrete experts; subclasses only declare `tool_specs()`."""

    name: str = ""
    version: str = "1.0.0"
    description: str = ""
    rules: Mapping[str, Any] = MappingProxyType({})

    def tool_specs(self) -> Sequence[ToolSpec]:
        raise NotImplementedError

    @property
    def tools(self) -> List[str]:
        return [t.name for t in self.tool_specs()]

    @property
    def default_tool(self) -> str:
        return self.tool_specs()[0].name

    def spec(self, tool: str) -> ToolSpec:
        for t in self.tool_specs():
            if t.name == tool:
                return t
        raise UnknownTool(tool, expert=self.name)

    def info(self) -> ExpertInfo:
        return ExpertInfo(
            name=self.name,
            version=self.version,
            description=self.description,
            tools=self.tools,
            default_tool=self.default_tool,
        )

    def build_manifest(self, tool: str, args: Dict[str, Any]) -> List[QueryDescriptor]:
        from doctor.diagnostics.manifest import build_tool_manifest  # noqa: WPS433

        return build_tool_manifest(self, self.spec(tool), args or {})

    def analyze(self, tool: str, results: ResultSet, args: Dict[str, Any]) -> AnalysisOutput:
        from doctor.diagnostics.manifest import run_analysis  # noqa: WPS433

        return run_analysis(self, self.spec(tool), results, args or {})
