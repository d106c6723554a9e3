"""
Database client protocol.

Every component that talks to a database does so through DatabaseClient only,
so a real driver (SQLAlchemyDatabaseClient) and a test double are
interchangeable. The interface covers parameterized statements, batched
statements, stored-function calls and transactions.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from envclone.models import Environment

Row = dict[str, Any]
"""A result row keyed by column name."""


@runtime_checkable
class DatabaseClient(Protocol):
    """
    Protocol for SQL-capable database clients.

    Statements use SQLAlchemy-style named parameters (``:name``).

    Example:
        >>> rows = await client.execute(
        ...     "SELECT id FROM public.users WHERE email = :email",
        ...     {"email": "user@example.com"},
        ... )
        >>> async with client.transaction() as tx:
        ...     await tx.execute("DELETE FROM public.sessions")
    """

    async def execute(
        self,
        statement: str,
        params: Mapping[str, Any] | None = None,
    ) -> list[Row]:
        """
        Execute one statement.

        Args:
            statement: SQL text with named parameters.
            params: Parameter values.

        Returns:
            Result rows, or an empty list for statements returning no rows.

        Raises:
            NetworkError: On connectivity failures (retryable).
        """
        ...

    async def execute_many(
        self,
        statement: str,
        rows: Sequence[Mapping[str, Any]],
    ) -> int:
        """
        Execute one statement once per parameter set.

        Returns:
            Number of parameter sets executed.
        """
        ...

    async def call_function(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Invoke a stored function with named arguments and return its value.

        Args:
            name: Function name, optionally schema-qualified.
            params: Named arguments.
        """
        ...

    def transaction(self) -> AbstractAsyncContextManager[DatabaseClient]:
        """
        Open a transaction.

        The yielded client runs inside the transaction. Leaving the block
        normally commits; an exception rolls back and propagates.
        """
        ...

    async def close(self) -> None:
        """Release connections held by the client."""
        ...


ClientProvider = Callable[["Environment"], DatabaseClient]
"""Factory resolving an Environment to the client used to reach it."""
