"""Deterministic failure-text classification (load jobs, transactions, task errors).

Categories are checked strictly in priority order and the first match wins, so every text
maps to exactly one category. Timeout and resource patterns also match inside identifiers
(`rpc_timeout`, `MEM_LIMIT_EXCEEDED`); the other categories are word-bounded, so `txn_id`
in a message does not make it a transaction failure, only the standalone word does.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Tuple

UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class FailureCategory:
    category: str
    root_cause: str
    patterns: Tuple[str, ...]
    hint: str = ""
    compiled: Tuple[Pattern[str], ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "compiled", tuple(re.compile(p, re.IGNORECASE) for p in self.patterns))

    def match(self, text: str) -> Optional[str]:
        for p in self.compiled:
            if p.search(text):
                return p.pattern
        return None


@dataclass(frozen=True)
class Classification:
    category: str
    root_cause: str
    matched_pattern: Optional[str] = None
    details: List[str] = field(default_factory=list)

    @property
    def is_classified(self) -> bool:
        return self.category != UNCLASSIFIED


FAILURE_CATEGORIES: Tuple[FailureCategory, ...] = (
    FailureCategory(
        "timeout",
        "Job exceeded its configured timeout",
        (r"reached[\s_]?timeout", r"time[d]?[\s_-]?out(?!put)", r"deadline[\s_]exceeded"),
        hint="Check BE load, BRPC latency and thread pool saturation; raise the job timeout only after that.",
    ),
    FailureCategory(
        "resource",
        "Insufficient memory or execution resources",
        (
            r"out[\s_]of[\s_]memory",
            r"(?<![a-z])oom(?![a-z])",
            r"mem(ory)?[\s_]limit[\s_]exceeded",
            r"exceed(ed|s)?[\s_](the[\s_])?mem(ory)?[\s_]limit",
            r"\bno available\b",
            r"\bresource (exhausted|limit)\b",
        ),
        hint="Add BE memory or reduce load concurrency.",
    ),
    FailureCategory(
        "data_quality",
        "Source data does not match the table schema",
        (
            r"\bcolumn\b",
            r"\btype mismatch\b",
            r"\bparse error\b",
            r"\bformat error\b",
            r"\btoo many filtered rows\b",
            r"\bmalformed\b",
        ),
        hint="Inspect the rejected record path and the column mapping.",
    ),
    FailureCategory(
        "network",
        "Network connectivity between FE/BE nodes or sources",
        (
            r"\bconnection (refused|reset|closed)\b",
            r"\bbroken pipe\b",
            r"\bconnect(ion)? failed\b",
            r"\b(network|host) (is )?unreachable\b",
        ),
        hint="Check node connectivity and BRPC ports.",
    ),
    FailureCategory(
        "file",
        "Source file could not be accessed",
        (r"\bfile not found\b", r"\bpath not found\b", r"\bno such file\b", r"\bfailed to open file\b"),
        hint="Verify the source path and broker credentials.",
    ),
    FailureCategory(
        "transaction",
        "Transaction commit or rollback failed",
        (r"\btransaction\b", r"\btxn\b"),
        hint="Check transaction conflicts and publish latency.",
    ),
    FailureCategory(
        "configuration",
        "Invalid job or table configuration",
        (r"\binvalid\b", r"\billegal\b", r"\bunknown (property|parameter|config)\b"),
        hint="Review the load properties against the table definition.",
    ),
    FailureCategory(
        "permission",
        "Insufficient privileges",
        (r"\bpermission denied\b", r"\baccess denied\b", r"\b(not )?unauthori[sz]ed\b"),
        hint="Grant the load user the required privileges.",
    ),
    FailureCategory(
        "cancelled",
        "Job was cancelled by a user or the system",
        (r"\bcancell?ed\b",),
    ),
)

KNOWN_CATEGORIES = frozenset([c.category for c in FAILURE_CATEGORIES] + [UNCLASSIFIED])


def classify_text(text: Optional[str], reason: Optional[str] = None) -> Classification:
    """
    Classify free-form failure text (plus an optional structured reason such as a job state).

    Pure function: the same input always yields the same classification.
    """
    blob = " ".join(s for s in ((text or "").strip(), (reason or "").strip()) if s)
    if not blob:
        return Classification(category=UNCLASSIFIED, root_cause="No error text available")

    for fc in FAILURE_CATEGORIES:
        pat = fc.match(blob)
        if pat is not None:
            details = [fc.hint] if fc.hint else []
            return Classification(category=fc.category, root_cause=fc.root_cause, matched_pattern=pat, details=details)

    return Classification(category=UNCLASSIFIED, root_cause="Unrecognized failure", details=[blob[:300]])
