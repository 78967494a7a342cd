"""
StarRocks diagnostic experts (one per subsystem).

Each expert declares its tools as manifest/analysis pairs and its limits as a rule table.
Experts:
- never open connections (manifests describe data, suppliers fetch it)
- never read another expert's results or Diagnosis
"""

from doctor.experts.cache import CacheExpert
from doctor.experts.compaction import CompactionExpert
from doctor.experts.ingestion import IngestionExpert
from doctor.experts.memory import MemoryExpert
from doctor.experts.query_perf import QueryPerfExpert
from doctor.experts.storage import StorageExpert
from doctor.experts.transaction import TransactionExpert

# Registry order is the canonical scope order.
DEFAULT_EXPERT_CLASSES = [
    StorageExpert,
    CompactionExpert,
    IngestionExpert,
    CacheExpert,
    MemoryExpert,
    TransactionExpert,
    QueryPerfExpert,
]

__all__ = [
    "DEFAULT_EXPERT_CLASSES",
    "CacheExpert",
    "CompactionExpert",
    "IngestionExpert",
    "MemoryExpert",
    "QueryPerfExpert",
    "StorageExpert",
    "TransactionExpert",
]
