"""Allow-list validation for caller-supplied identifiers.

Manifests never splice caller input into SQL; values travel as bound params. These checks
still reject anything that is not a plausible StarRocks identifier so a bad argument fails
before a manifest is emitted.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from doctor.core.errors import InvalidArguments, UnsafeIdentifier

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]{0,127}$")
_LABEL_RE = re.compile(r"^[A-Za-z0-9_\-.:]{1,128}$")
_TIME_RANGE_RE = re.compile(r"^\d{1,4}[smhd]$")


def validate_identifier(field: str, value: Any) -> str:
    s = str(value or "").strip()
    if not _IDENTIFIER_RE.match(s):
        raise UnsafeIdentifier(field, value)
    return s


def validate_label(value: Any) -> str:
    s = str(value or "").strip()
    if not _LABEL_RE.match(s):
        raise UnsafeIdentifier("label", value)
    return s


def validate_time_range(value: Any, *, field: str = "time_range") -> str:
    s = str(value or "").strip()
    if not _TIME_RANGE_RE.match(s):
        raise UnsafeIdentifier(field, value)
    return s


def optional_identifier(args: Dict[str, Any], field: str) -> Optional[str]:
    raw = args.get(field)
    if raw is None or str(raw).strip() == "":
        return None
    return validate_identifier(field, raw)


def bounded_int(args: Dict[str, Any], field: str, default: int, *, lo: int, hi: int) -> int:
    raw = args.get(field, default)
    if isinstance(raw, bool):
        raise InvalidArguments(f"'{field}' must be an integer")
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise InvalidArguments(f"'{field}' must be an integer, got {raw!r}") from e
    if not lo <= value <= hi:
        raise InvalidArguments(f"'{field}' must be within [{lo}, {hi}], got {value}")
    return value
