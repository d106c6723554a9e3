"""
Batched table copying between two database clients.

TableCopier is shared by the clone phases, the specialized system cloners and
the backup manager. It reads pages of rows from one client, optionally
transforms each page (anonymization), and writes them to another client with
one parameterized INSERT per page.

Statements produced here (``q`` is the qualified table name)::

    SELECT * FROM q [WHERE col >= :f0 AND col = ANY(:f1)] ORDER BY 1 LIMIT :limit OFFSET :offset
    INSERT INTO q (a, b) VALUES (:p0, :p1)
    DELETE FROM q [WHERE ...]
    SELECT COUNT(*) AS count FROM q [WHERE ...]
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from envclone.database import DatabaseClient, Row
from envclone.observability import ATTR_ROW_COUNT, ATTR_TABLE_NAME, Tracer, create_tracer
from envclone.schema.models import TableDefinition

logger = logging.getLogger(__name__)

JSON_TYPES = ("json", "jsonb")

BatchTransform = Callable[[list[Row]], tuple[list[Row], int]]
"""Maps a page of rows to (new rows, number of rows changed)."""


@dataclass(frozen=True)
class RowFilter:
    """
    One condition of a table read.

    Attributes:
        column: Column the condition applies to.
        operator: ``>=`` or ``=`` for scalar values, ``IN`` for a sequence.
        value: Comparison value.
    """

    column: str
    operator: str
    value: Any

    def __post_init__(self) -> None:
        if self.operator not in (">=", "=", "IN"):
            raise ValueError(f"unsupported filter operator: {self.operator}")

    @classmethod
    def newer_than(cls, column: str, days: int) -> RowFilter:
        """Rows whose ``column`` is within the last ``days`` days."""
        return cls(column, ">=", datetime.now(UTC) - timedelta(days=days))

    @classmethod
    def one_of(cls, column: str, values: Sequence[Any]) -> RowFilter:
        return cls(column, "IN", list(values))


def where_clause(filters: Sequence[RowFilter]) -> tuple[str, dict[str, Any]]:
    """
    Render filters as a WHERE clause and its parameters.

    Example:
        >>> where_clause([RowFilter("created_at", ">=", cutoff)])
        (' WHERE created_at >= :f0', {'f0': cutoff})
    """
    if not filters:
        return "", {}
    conditions: list[str] = []
    params: dict[str, Any] = {}
    for position, row_filter in enumerate(filters):
        name = f"f{position}"
        if row_filter.operator == "IN":
            conditions.append(f"{row_filter.column} = ANY(:{name})")
        else:
            conditions.append(f"{row_filter.column} {row_filter.operator} :{name}")
        params[name] = row_filter.value
    return " WHERE " + " AND ".join(conditions), params


def row_size(row: Mapping[str, Any]) -> int:
    """Approximate size of a row in bytes, as serialized JSON."""
    return len(json.dumps(row, default=str))


@dataclass
class TableCopyResult:
    """
    Outcome of copying one table.

    Attributes:
        table: Qualified table name.
        rows_read: Rows read from the source.
        rows_written: Rows written to the target.
        rows_transformed: Rows changed by the transform.
        bytes_copied: Approximate size of the written rows.
        duration_seconds: Wall time of the copy.
    """

    table: str
    rows_read: int = 0
    rows_written: int = 0
    rows_transformed: int = 0
    bytes_copied: int = 0
    duration_seconds: float = 0.0
    warnings: list[str] = field(default_factory=list)


class TableCopier:
    """
    Copies tables page by page between database clients.

    Example:
        >>> copier = TableCopier(batch_size=500)
        >>> result = await copier.copy_table(source_client, target_client, users_table)
        >>> result.rows_written
        1200
    """

    def __init__(
        self,
        *,
        batch_size: int = 500,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._batch_size = batch_size
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def copy_table(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        table: TableDefinition,
        *,
        filters: Sequence[RowFilter] = (),
        transform: BatchTransform | None = None,
        replace: bool = True,
    ) -> TableCopyResult:
        """
        Copy the rows of ``table`` from ``source`` to ``target``.

        Args:
            source: Client to read from.
            target: Client to write to.
            table: Table definition; JSON columns are serialized on write.
            filters: Conditions restricting the rows read.
            transform: Applied to every page before it is written.
            replace: Delete the target rows matching ``filters`` first.

        Returns:
            TableCopyResult with row, transform and byte counts.
        """
        name = table.qualified_name
        result = TableCopyResult(table=name)
        started = time.monotonic()

        with self._tracer.span("envclone.copy.table", {ATTR_TABLE_NAME: name}) as span:
            if replace:
                await self.delete_rows(target, name, filters)

            async for page in self.read_pages(source, name, filters):
                result.rows_read += len(page)
                if transform is not None:
                    page, changed = transform(page)
                    result.rows_transformed += changed
                result.rows_written += await self.write_rows(target, table, page)
                result.bytes_copied += sum(row_size(row) for row in page)

            if span is not None:
                span.set_attribute(ATTR_ROW_COUNT, result.rows_written)

        result.duration_seconds = time.monotonic() - started
        logger.debug(
            "Copied %d rows of %s in %.2fs",
            result.rows_written,
            name,
            result.duration_seconds,
        )
        return result

    async def read_pages(
        self,
        client: DatabaseClient,
        table_name: str,
        filters: Sequence[RowFilter] = (),
    ) -> AsyncIterator[list[Row]]:
        """Yield the rows of a table in pages of ``batch_size``."""
        where, params = where_clause(filters)
        statement = f"SELECT * FROM {table_name}{where} ORDER BY 1 LIMIT :limit OFFSET :offset"
        offset = 0
        while True:
            page = await client.execute(
                statement,
                {**params, "limit": self._batch_size, "offset": offset},
            )
            if not page:
                return
            yield page
            if len(page) < self._batch_size:
                return
            offset += len(page)

    async def read_all(
        self,
        client: DatabaseClient,
        table_name: str,
        filters: Sequence[RowFilter] = (),
    ) -> list[Row]:
        rows: list[Row] = []
        async for page in self.read_pages(client, table_name, filters):
            rows.extend(page)
        return rows

    async def write_rows(
        self,
        client: DatabaseClient,
        table: TableDefinition,
        rows: Sequence[Mapping[str, Any]],
    ) -> int:
        """
        Insert rows into a table, one statement per page.

        Columns are taken from the first row; dict and list values of JSON
        columns are serialized.
        """
        if not rows:
            return 0
        columns = list(rows[0].keys())
        json_columns = {
            c.name for c in table.columns if c.data_type.lower().startswith(JSON_TYPES)
        }
        placeholders = ", ".join(f":p{i}" for i in range(len(columns)))
        statement = (
            f"INSERT INTO {table.qualified_name} ({', '.join(columns)}) VALUES ({placeholders})"
        )
        parameters = [
            {
                f"p{i}": _encode(row.get(column), column in json_columns)
                for i, column in enumerate(columns)
            }
            for row in rows
        ]
        return await client.execute_many(statement, parameters)

    async def delete_rows(
        self,
        client: DatabaseClient,
        table_name: str,
        filters: Sequence[RowFilter] = (),
    ) -> None:
        where, params = where_clause(filters)
        await client.execute(f"DELETE FROM {table_name}{where}", params or None)

    async def count_rows(
        self,
        client: DatabaseClient,
        table_name: str,
        filters: Sequence[RowFilter] = (),
    ) -> int:
        where, params = where_clause(filters)
        rows = await client.execute(
            f"SELECT COUNT(*) AS count FROM {table_name}{where}",
            params or None,
        )
        return int(rows[0]["count"]) if rows else 0


def _encode(value: Any, is_json: bool) -> Any:
    if is_json and isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return value
