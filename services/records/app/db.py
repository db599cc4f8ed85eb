"""
The single query capability the allocation code depends on.

A department pool (`AsyncEngine`) and a transactional handle (`AsyncConnection` inside
`begin()`) are wrapped into objects with the same `execute()` contract, so allocation code
never branches on which one it was given. Storage exceptions are translated into the
layer's own taxonomy here and nowhere else.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql.base import Executable

from services.records.app.errors import DuplicateIdentifier, PoolTimeout, QueryFailure
from services.records.app.logging import logger
from services.records.app.observability import POOL_TIMEOUT_TOTAL

UNIQUE_VIOLATION = "23505"


@dataclass(frozen=True)
class QueryResult:
    row_count: int
    rows: list[Mapping[str, Any]] = field(default_factory=list)

    def first(self) -> Mapping[str, Any] | None:
        return self.rows[0] if self.rows else None


class QueryExecutor(Protocol):
    tenant_key: str

    @property
    def in_transaction(self) -> bool: ...

    async def execute(self, statement: Executable) -> QueryResult: ...


def _is_unique_violation(err: sa_exc.IntegrityError) -> bool:
    # asyncpg's adapted errors and psycopg both expose the SQLSTATE here.
    return getattr(err.orig, "sqlstate", None) == UNIQUE_VIOLATION


@asynccontextmanager
async def storage_errors(tenant_key: str) -> AsyncIterator[None]:
    try:
        yield
    except sa_exc.TimeoutError as e:
        POOL_TIMEOUT_TOTAL.labels(tenant_key).inc()
        logger.warning("pool_timeout", tenant=tenant_key)
        raise PoolTimeout(tenant_key) from e
    except sa_exc.IntegrityError as e:
        if _is_unique_violation(e):
            raise DuplicateIdentifier(tenant_key) from e
        raise QueryFailure(tenant_key, "integrity error") from e
    except sa_exc.SQLAlchemyError as e:
        raise QueryFailure(tenant_key, type(e).__name__) from e
    except OSError as e:
        # Drivers surface refused or dropped connections as raw socket errors.
        raise QueryFailure(tenant_key, "connection failed") from e


def _to_query_result(result: CursorResult) -> QueryResult:
    if result.returns_rows:
        rows = [dict(r) for r in result.mappings().all()]
        return QueryResult(row_count=len(rows), rows=rows)
    return QueryResult(row_count=max(result.rowcount, 0))


class PoolExecutor:
    """Runs each statement on its own pooled connection, committed on success."""

    def __init__(self, engine: AsyncEngine, tenant_key: str):
        self._engine = engine
        self.tenant_key = tenant_key

    @property
    def in_transaction(self) -> bool:
        return False

    async def execute(self, statement: Executable) -> QueryResult:
        async with storage_errors(self.tenant_key):
            async with self._engine.begin() as conn:
                return _to_query_result(await conn.execute(statement))


class TransactionExecutor:
    """Runs statements in program order on one held connection; the owner commits."""

    def __init__(self, conn: AsyncConnection, tenant_key: str):
        self._conn = conn
        self.tenant_key = tenant_key

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction()

    async def execute(self, statement: Executable) -> QueryResult:
        async with storage_errors(self.tenant_key):
            return _to_query_result(await self._conn.execute(statement))
