"""Diagnostic engine (expert-agnostic).

- threshold evaluation and failure text classification
- manifest building, result views and per-expert analysis plumbing
- scoring, cross-module correlation and recommendation prioritization
- the registry and the coordinator that ties experts together
"""

from .base import BaseExpert, Expert, ToolSpec
from .coordinator import ExpertCoordinator
from .registry import ExpertRegistry, get_default_registry

__all__ = ["BaseExpert", "Expert", "ExpertCoordinator", "ExpertRegistry", "ToolSpec", "get_default_registry"]
