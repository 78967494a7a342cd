"""Cross-module correlation rules.

A rule is an N-ary predicate over the Diagnoses of the experts it names. Predicates read
issue categories only, never raw metrics, so correlation stays independent of how data was
acquired. Rules run only when at least two Diagnoses exist in the same invocation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

from doctor.core.models import CorrelationFinding, Diagnosis, Priority, Recommendation, Severity

logger = logging.getLogger(__name__)

DiagnosisMap = Mapping[str, Diagnosis]

DISK_CRITICAL = frozenset({"disk_critical", "disk_emergency"})
HIGH_COMPACTION_SCORE = frozenset({"compaction_score_very_high", "compaction_score_extremely_high"})
INGESTION_FAILURE_RATE = frozenset({"high_failure_rate", "elevated_failure_rate"})
MEMORY_CRITICAL = frozenset({"critical_memory_usage", "memory_emergency"})


@dataclass(frozen=True)
class CorrelationRule:
    name: str
    experts: Tuple[str, ...]
    predicate: Callable[[DiagnosisMap], bool]
    impact_level: Priority
    explanation: str
    remediation: Callable[[], Recommendation]

    def evaluate(self, diagnoses: DiagnosisMap) -> Optional[CorrelationFinding]:
        if any(e not in diagnoses for e in self.experts):
            return None
        if not self.predicate(diagnoses):
            return None
        return CorrelationFinding(
            rule_name=self.name,
            impact_level=self.impact_level,
            explanation=self.explanation,
            affected_experts=list(self.experts),
            remediation=self.remediation(),
        )


def has_issue(
    diagnoses: DiagnosisMap, expert: str, categories: Iterable[str], severity: Optional[Severity] = None
) -> bool:
    d = diagnoses.get(expert)
    return d is not None and d.has_issue(set(categories), severity)


def _remediation(
    priority: Priority, title: str, experts: Sequence[str], actions: Sequence[str]
) -> Callable[[], Recommendation]:
    def build() -> Recommendation:
        return Recommendation(
            priority=priority,
            category="cross_module_coordination",
            title=title,
            description="Requires a coordinated fix across: " + ", ".join(experts),
            actions=list(actions),
            is_cross_module=True,
            source_expert="coordinator",
            affected_experts=list(experts),
        )

    return build


DEFAULT_RULES: Tuple[CorrelationRule, ...] = (
    CorrelationRule(
        name="storage_compaction_impact",
        experts=("storage", "compaction"),
        predicate=lambda d: has_issue(d, "storage", DISK_CRITICAL, "CRITICAL")
        and has_issue(d, "compaction", HIGH_COMPACTION_SCORE, "CRITICAL"),
        impact_level="HIGH",
        explanation="Low disk space slows compaction, and the compaction backlog keeps disk usage high",
        remediation=_remediation(
            "HIGH",
            "Break the disk / compaction feedback loop",
            ("storage", "compaction"),
            (
                "Free disk space first so compaction has room to write",
                "Pause non-critical loads to stop new versions piling up",
                "Trigger compaction in batches, highest-score partitions first",
                "Watch disk usage and compaction score recover",
                "Plan capacity and compaction settings for the long term",
            ),
        ),
    ),
    CorrelationRule(
        name="thread_cs_correlation",
        experts=("compaction",),
        predicate=lambda d: has_issue(d, "compaction", {"low_compaction_threads"}, "WARNING")
        and has_issue(d, "compaction", HIGH_COMPACTION_SCORE, "CRITICAL"),
        impact_level="MEDIUM",
        explanation="Too few compaction threads is the main driver of the compaction score backlog",
        remediation=_remediation(
            "MEDIUM",
            "Raise compaction threads to clear the backlog",
            ("compaction",),
            (
                "Raise compact_threads to the recommended value",
                "Monitor compaction task throughput",
                "Check how fast the compaction score falls",
                "Trigger manual compaction if it does not",
            ),
        ),
    ),
    CorrelationRule(
        name="ingestion_storage_impact",
        experts=("storage", "ingestion"),
        predicate=lambda d: has_issue(d, "storage", DISK_CRITICAL, "CRITICAL")
        and has_issue(d, "ingestion", INGESTION_FAILURE_RATE, "CRITICAL"),
        impact_level="HIGH",
        explanation="Loads are failing while disks are nearly full",
        remediation=_remediation(
            "HIGH",
            "Free disk space before retrying failed loads",
            ("storage", "ingestion"),
            ("Clean up or expand storage", "Retry failed loads once space is available"),
        ),
    ),
    CorrelationRule(
        name="ingestion_compaction_resource_conflict",
        experts=("ingestion", "compaction"),
        predicate=lambda d: has_issue(d, "ingestion", {"load_queue_backlog"}, "CRITICAL")
        and has_issue(d, "compaction", {"high_compaction_pressure"}, "CRITICAL"),
        impact_level="MEDIUM",
        explanation="Load backlog and compaction pressure compete for CPU and memory",
        remediation=_remediation(
            "MEDIUM",
            "Stagger loads and compaction",
            ("ingestion", "compaction"),
            ("Throttle load submissions during compaction peaks", "Isolate workloads with resource groups"),
        ),
    ),
    CorrelationRule(
        name="cache_compaction_impact",
        experts=("cache", "compaction"),
        predicate=lambda d: has_issue(d, "cache", {"low_cache_hit_ratio"}, "CRITICAL")
        and has_issue(d, "compaction", HIGH_COMPACTION_SCORE, "CRITICAL"),
        impact_level="MEDIUM",
        explanation="A high compaction score fragments data files and lowers cache efficiency",
        remediation=_remediation(
            "MEDIUM",
            "Compact fragmented partitions to restore cache efficiency",
            ("cache", "compaction"),
            ("Compact the highest-score partitions", "Re-check the cache hit ratio afterwards"),
        ),
    ),
    CorrelationRule(
        name="cache_storage_capacity",
        experts=("cache", "storage"),
        predicate=lambda d: has_issue(d, "cache", {"cache_capacity_critical"}, "CRITICAL")
        and has_issue(d, "storage", DISK_CRITICAL, "CRITICAL"),
        impact_level="HIGH",
        explanation="Local disks are too full to grow the data cache",
        remediation=_remediation(
            "HIGH",
            "Free or add local disk before growing the cache",
            ("cache", "storage"),
            ("Clean up local storage or add disks", "Then raise datacache_disk_size"),
        ),
    ),
    CorrelationRule(
        name="memory_ingestion_pressure",
        experts=("memory", "ingestion"),
        predicate=lambda d: has_issue(d, "memory", MEMORY_CRITICAL, "CRITICAL")
        and has_issue(d, "ingestion", {"load_failures_resource"}),
        impact_level="MEDIUM",
        explanation="Loads are failing for memory while nodes run near their memory limit",
        remediation=_remediation(
            "MEDIUM",
            "Relieve node memory before retrying loads",
            ("memory", "ingestion"),
            ("Lower load concurrency on the hot nodes", "Review load_process_max_memory_limit_percent"),
        ),
    ),
)


def correlate(diagnoses: DiagnosisMap, rules: Sequence[CorrelationRule] = DEFAULT_RULES) -> List[CorrelationFinding]:
    """Evaluate every rule in order. Needs at least two Diagnoses; a failing predicate is skipped."""
    if len(diagnoses) < 2:
        return []
    out: List[CorrelationFinding] = []
    for rule in rules:
        try:
            finding = rule.evaluate(diagnoses)
        except Exception as e:
            logger.warning(f"Correlation rule {rule.name} failed: {e}")
            continue
        if finding is not None:
            out.append(finding)
    return out
