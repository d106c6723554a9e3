"""
SQLAlchemy implementation of the DatabaseClient protocol.

Works on an AsyncEngine (each call takes its own connection) or on an
AsyncConnection (calls share the caller's transaction). Connectivity failures
are translated to NetworkError so the retry machinery can recognize them.

Example:
    >>> from sqlalchemy.ext.asyncio import create_async_engine
    >>> engine = create_async_engine("postgresql+asyncpg://localhost/test")
    >>> client = SQLAlchemyDatabaseClient(engine)
    >>> rows = await client.execute("SELECT version() AS version")
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from envclone.database._connection import execute_with_connection
from envclone.database.client import Row
from envclone.exceptions import NetworkError
from envclone.observability import (
    ATTR_DB_FUNCTION,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    Tracer,
    create_tracer,
)

if TYPE_CHECKING:
    from envclone.models import Environment

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_READ_KEYWORDS = frozenset({"SELECT", "WITH", "SHOW", "EXPLAIN"})


def _leading_keyword(statement: str) -> str:
    stripped = statement.lstrip()
    while stripped.startswith("--"):
        stripped = stripped.split("\n", 1)[1].lstrip() if "\n" in stripped else ""
    return stripped.split(None, 1)[0].upper() if stripped else ""


class SQLAlchemyDatabaseClient:
    """
    DatabaseClient backed by SQLAlchemy's asyncio extension.

    Args:
        conn: AsyncEngine or AsyncConnection.
        owns_engine: Dispose the engine on close() (set by from_environment).
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        conn: AsyncEngine | AsyncConnection,
        *,
        owns_engine: bool = False,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._owns_engine = owns_engine
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @classmethod
    def from_environment(
        cls,
        environment: Environment,
        **engine_kwargs: Any,
    ) -> SQLAlchemyDatabaseClient:
        """
        Create a client with its own engine for an environment.

        Args:
            environment: Environment whose ``database_url`` is used.
            **engine_kwargs: Passed to ``create_async_engine``.
        """
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine = create_async_engine(environment.database_url, **engine_kwargs)
        return cls(engine, owns_engine=True)

    async def execute(
        self,
        statement: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        keyword = _leading_keyword(statement)
        with self._tracer.span(
            "envclone.database.execute",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_DB_OPERATION: keyword},
        ):
            try:
                async with execute_with_connection(
                    self._conn,
                    transactional=keyword not in _READ_KEYWORDS,
                    autocommit="CONCURRENTLY" in statement.upper(),
                ) as conn:
                    result = await conn.execute(text(statement), dict(params or {}))
                    if not result.returns_rows:
                        return []
                    return [dict(row._mapping) for row in result.fetchall()]
            except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as e:
                raise NetworkError(
                    f"Database unreachable during {keyword or 'statement'}: {e}"
                ) from e
            except DBAPIError as e:
                if e.connection_invalidated:
                    raise NetworkError(f"Connection lost during {keyword}: {e}") from e
                raise

    async def execute_many(
        self,
        statement: str,
        rows: Sequence[Mapping[str, Any]],
    ) -> int:
        if not rows:
            return 0
        with self._tracer.span(
            "envclone.database.execute_many",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_DB_OPERATION: _leading_keyword(statement)},
        ):
            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    await conn.execute(text(statement), [dict(row) for row in rows])
            except (OperationalError, InterfaceError, PoolTimeoutError, OSError) as e:
                raise NetworkError(f"Database unreachable during batch write: {e}") from e
        return len(rows)

    async def call_function(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        if not _IDENTIFIER.match(name):
            raise ValueError(f"Invalid function name: {name!r}")
        params = dict(params or {})
        for key in params:
            if not _IDENTIFIER.match(key) or "." in key:
                raise ValueError(f"Invalid argument name for {name}: {key!r}")
        arguments = ", ".join(f"{key} => :{key}" for key in params)
        with self._tracer.span(
            "envclone.database.call_function",
            {ATTR_DB_SYSTEM: "postgresql", ATTR_DB_FUNCTION: name},
        ):
            rows = await self.execute(f"SELECT {name}({arguments}) AS result", params)
        return rows[0]["result"] if rows else None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLAlchemyDatabaseClient]:
        if isinstance(self._conn, AsyncEngine):
            async with self._conn.begin() as conn:
                yield SQLAlchemyDatabaseClient(conn, tracer=self._tracer)
        elif self._conn.in_transaction():
            async with self._conn.begin_nested():
                yield self
        else:
            async with self._conn.begin():
                yield self

    async def close(self) -> None:
        if self._owns_engine and isinstance(self._conn, AsyncEngine):
            await self._conn.dispose()
            logger.debug("Disposed engine %s", self._conn.url.render_as_string(hide_password=True))


def sqlalchemy_client_provider(environment: Environment) -> SQLAlchemyDatabaseClient:
    """Default ClientProvider: one engine-backed client per environment."""
    return SQLAlchemyDatabaseClient.from_environment(environment)
