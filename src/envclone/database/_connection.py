"""
Connection handling helper for the SQLAlchemy client.

``execute_with_connection`` accepts either an AsyncEngine or an
AsyncConnection so the same client code runs standalone and inside an
enclosing transaction.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
    autocommit: bool = False,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager yielding a connection ready for ``execute()``.

    Args:
        conn: Database connection or engine
        transactional: Wrap in a transaction (begin) when given an engine.
        autocommit: Run outside any transaction block. Needed for statements
            PostgreSQL refuses inside transactions (CREATE INDEX CONCURRENTLY).
            Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection
    """
    if isinstance(conn, AsyncEngine):
        if autocommit:
            async with conn.connect() as connection:
                connection = await connection.execution_options(isolation_level="AUTOCOMMIT")
                yield connection
        elif transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        # Caller owns the transaction of an existing connection
        yield conn
