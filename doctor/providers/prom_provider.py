"""Prometheus HTTP backend (instant and range queries)."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import requests

from doctor.core.config import DEFAULT_PROMETHEUS_URL
from doctor.core.errors import BackendError
from doctor.core.units import step_for_time_range, time_range_seconds

logger = logging.getLogger(__name__)

DEFAULT_RANGE = "1h"


@runtime_checkable
class PromBackend(Protocol):
    def query_instant(self, query: str) -> Dict[str, Any]: ...

    def query_range(self, query: str, time_range: Optional[str] = None, step: Optional[str] = None) -> Dict[str, Any]: ...


class HttpPromBackend:
    """
    Thin `requests` client for the Prometheus HTTP API.

    Returns the full response envelope (`{"status": "success", "data": {...}}`) so analysis code
    sees exactly what a client-side executor would submit.
    """

    def __init__(self, base_url: str = DEFAULT_PROMETHEUS_URL, *, timeout: int = 30) -> None:
        self.base_url = (base_url or DEFAULT_PROMETHEUS_URL).rstrip("/")
        self.timeout = timeout

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise BackendError(f"Failed to query Prometheus: {e}") from e
        except ValueError as e:
            raise BackendError(f"Prometheus returned invalid JSON: {e}") from e

        if not isinstance(data, dict) or data.get("status") != "success":
            err = data.get("error", "Unknown error") if isinstance(data, dict) else "Unknown error"
            raise BackendError(f"Prometheus query failed: {err}")
        return data

    def query_instant(self, query: str) -> Dict[str, Any]:
        return self._get("/api/v1/query", {"query": query, "time": int(time.time())})

    def query_range(self, query: str, time_range: Optional[str] = None, step: Optional[str] = None) -> Dict[str, Any]:
        time_range = time_range or DEFAULT_RANGE
        seconds = time_range_seconds(time_range)
        if seconds is None:
            logger.warning(f"Invalid time range {time_range!r}, falling back to {DEFAULT_RANGE}")
            time_range, seconds = DEFAULT_RANGE, time_range_seconds(DEFAULT_RANGE)
        end = int(time.time())
        params = {
            "query": query,
            "start": end - int(seconds or 0),
            "end": end,
            "step": step or step_for_time_range(time_range),
        }
        return self._get("/api/v1/query_range", params)
