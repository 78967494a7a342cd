from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_PROMETHEUS_URL = "http://localhost:9090"
DEFAULT_SCOPE: Tuple[str, ...] = ("storage", "compaction", "ingestion", "cache")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


@dataclass(frozen=True)
class DoctorConfig:
    # Data acquisition
    prometheus_url: str
    prometheus_timeout_seconds: int
    starrocks_dsn: Optional[str]

    # Coordination defaults
    default_scope: Tuple[str, ...]
    architecture: Optional[str]
    cross_module: bool

    # Optional LLM failure classification (additive; default off)
    llm_classifier: bool

    log_level: str


def load_config() -> DoctorConfig:
    scope_raw = (os.getenv("DOCTOR_DEFAULT_SCOPE") or "").strip()
    scope = tuple(s.strip() for s in scope_raw.split(",") if s.strip()) or DEFAULT_SCOPE

    arch = (os.getenv("DOCTOR_ARCHITECTURE") or "").strip().lower() or None
    if arch not in (None, "shared_data", "shared_nothing"):
        arch = None

    timeout = max(1, min(_env_int("PROMETHEUS_TIMEOUT_SECONDS", 30), 300))

    return DoctorConfig(
        prometheus_url=(os.getenv("PROMETHEUS_URL") or "").strip().rstrip("/") or DEFAULT_PROMETHEUS_URL,
        prometheus_timeout_seconds=timeout,
        starrocks_dsn=(os.getenv("STARROCKS_DSN") or "").strip() or None,
        default_scope=scope,
        architecture=arch,
        cross_module=_env_bool("DOCTOR_CROSS_MODULE", True),
        llm_classifier=_env_bool("DOCTOR_LLM_CLASSIFIER", False),
        log_level=(os.getenv("LOG_LEVEL") or "").strip().upper() or "INFO",
    )
