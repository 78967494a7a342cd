"""Value parsing helpers shared by experts (sizes, percentages, time ranges).

Every helper is total: malformed input maps to None (or 0 for sizes) rather than raising,
so analysis functions can degrade to "no data" instead of failing.
"""

from __future__ import annotations

import math
import re
from typing import Any, Optional, Sequence

_SIZE_RE = re.compile(r"^([\d.]+)\s*([KMGT]?B|BYTES)?$", re.IGNORECASE)
_SIZE_UNITS_GB = {
    "B": 1 / 1024**3,
    "BYTES": 1 / 1024**3,
    "KB": 1 / 1024**2,
    "MB": 1 / 1024,
    "GB": 1.0,
    "TB": 1024.0,
}
_TIME_RANGE_RE = re.compile(r"^(\d+)([smhd])$")


def to_float(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v) if math.isfinite(float(v)) else None
    s = str(v).strip().rstrip("%").strip()
    if not s:
        return None
    try:
        out = float(s)
    except ValueError:
        return None
    return out if math.isfinite(out) else None


def to_int(v: Any) -> Optional[int]:
    f = to_float(v)
    return int(f) if f is not None else None


def parse_storage_size_gb(size: Any) -> float:
    """
    Parse StarRocks size strings into GB.

    Accepts "1.23 GB", "500 MB", "1.5 TB", "1024 KB", "0.00 Bytes" and bare numbers (bytes).
    """
    if size is None:
        return 0.0
    if isinstance(size, (int, float)) and not isinstance(size, bool):
        return float(size) / 1024**3
    m = _SIZE_RE.match(str(size).strip())
    if not m:
        return 0.0
    try:
        value = float(m.group(1))
    except ValueError:
        return 0.0
    unit = (m.group(2) or "B").upper()
    return value * _SIZE_UNITS_GB.get(unit, 0.0)


def format_size_gb(size_gb: float, decimals: int = 2) -> str:
    if size_gb == 0:
        return "0 GB"
    if size_gb >= 1024:
        return f"{size_gb / 1024:.{decimals}f} TB"
    if size_gb >= 1:
        return f"{size_gb:.{decimals}f} GB"
    if size_gb >= 1 / 1024:
        return f"{size_gb * 1024:.{decimals}f} MB"
    return f"{size_gb * 1024 * 1024:.{decimals}f} KB"


def mean_and_stddev(values: Sequence[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def time_range_seconds(time_range: str) -> Optional[int]:
    m = _TIME_RANGE_RE.match((time_range or "").strip())
    if not m:
        return None
    value, unit = int(m.group(1)), m.group(2)
    return value * {"s": 1, "m": 60, "h": 3600, "d": 86400}[unit]


def step_for_time_range(time_range: str) -> str:
    """Resolution for range queries: finer for short windows, coarser for long ones."""
    m = _TIME_RANGE_RE.match((time_range or "").strip())
    if not m:
        return "1m"
    value, unit = int(m.group(1)), m.group(2)
    if unit == "h":
        return "5m" if value > 6 else "1m"
    if unit in ("m", "s"):
        return "15s"
    return "15m"


def rate_interval_for_step(step: str) -> str:
    """`rate()` window: at least 4x the step so every point covers several scrapes."""
    secs = time_range_seconds(step) or 60
    return f"{max(secs * 4, 60)}s"
