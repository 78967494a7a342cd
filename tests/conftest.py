"""
Pytest config.

Local imports like `import doctor` rely on the repo root being on sys.path. When invoking
a global `pytest` entrypoint without an editable install that doesn't happen reliably
during collection, so we pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


@pytest.fixture(autouse=True)
def _isolate_doctor_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Unit tests never talk to a real cluster or LLM.

    Clear env knobs that change defaults so a developer's shell doesn't leak into results.
    Individual tests set what they need with `monkeypatch.setenv`.
    """
    for name in (
        "PROMETHEUS_URL",
        "PROMETHEUS_TIMEOUT_SECONDS",
        "STARROCKS_DSN",
        "DOCTOR_DEFAULT_SCOPE",
        "DOCTOR_ARCHITECTURE",
        "DOCTOR_CROSS_MODULE",
        "DOCTOR_LLM_CLASSIFIER",
        "LLM_PROVIDER",
        "LLM_MOCK",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
