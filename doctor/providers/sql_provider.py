"""StarRocks SQL backend over the MySQL protocol (SQLAlchemy + PyMySQL)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from doctor.core.errors import BackendError

logger = logging.getLogger(__name__)


@runtime_checkable
class SqlBackend(Protocol):
    def execute(self, statement: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]: ...


def bind_params(params: Sequence[Any]) -> Dict[str, Any]:
    """Positional descriptor params -> named binds for `:p0, :p1, ...` placeholders."""
    return {f"p{i}": v for i, v in enumerate(params or [])}


class StarRocksSqlBackend:
    """
    Executes manifest SQL against a FE node.

    Rows are returned as plain dicts keyed by column name. Statements are always executed with
    bound parameters; values are never interpolated into SQL text.
    """

    def __init__(self, dsn: Optional[str] = None, *, engine: Optional[Engine] = None) -> None:
        if engine is None:
            if not dsn:
                raise BackendError("STARROCKS_DSN is not configured")
            engine = create_engine(
                dsn,
                echo=False,
                pool_size=5,
                max_overflow=5,
                pool_pre_ping=True,
                pool_recycle=3600,
                pool_timeout=30,
            )
        self.engine = engine

    def execute(self, statement: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(text(statement), bind_params(params))
                if not result.returns_rows:
                    return []
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as e:
            raise BackendError(f"StarRocks query failed: {e}") from e

    def close(self) -> None:
        self.engine.dispose()
