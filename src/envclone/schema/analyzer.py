"""
PostgreSQL schema analyzer.

Extracts a SchemaDefinition from a live database through the DatabaseClient
protocol, using ``information_schema`` and ``pg_catalog``. Each object class
is gated by a SchemaAnalysisOptions flag. Any failure raises
SchemaAnalysisError; a partially populated schema is never returned.

Example:
    >>> analyzer = SchemaAnalyzer(client)
    >>> result = await analyzer.analyze_schema(
    ...     SchemaAnalysisOptions(schemas_to_analyze=("public",), tables_to_exclude=("sessions",))
    ... )
    >>> result.statistics.total_tables
    42
"""

from __future__ import annotations

import logging
import re
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from envclone.database import DatabaseClient, Row
from envclone.exceptions import NetworkError, SchemaAnalysisError, describe_error
from envclone.observability import ATTR_SCHEMA_NAMES, Tracer, create_tracer
from envclone.schema.models import (
    ColumnDefinition,
    ExtensionDefinition,
    FunctionDefinition,
    IndexDefinition,
    PolicyDefinition,
    SchemaDefinition,
    TableDefinition,
    TriggerDefinition,
)

logger = logging.getLogger(__name__)

SCHEMAS_QUERY = """
SELECT schema_name
FROM information_schema.schemata
WHERE schema_name NOT IN ('information_schema', 'pg_catalog', 'pg_toast')
  AND schema_name NOT LIKE 'pg_temp_%'
  AND schema_name NOT LIKE 'pg_toast_temp_%'
ORDER BY schema_name
"""

TABLES_QUERY = """
SELECT table_schema, table_name, table_type
FROM information_schema.tables
WHERE table_schema = ANY(:schemas)
  AND table_type IN ('BASE TABLE', 'VIEW')
ORDER BY table_schema, table_name
"""

COLUMNS_QUERY = """
SELECT table_schema, table_name, column_name, data_type, udt_name,
       character_maximum_length, is_nullable, column_default, ordinal_position
FROM information_schema.columns
WHERE table_schema = ANY(:schemas)
ORDER BY table_schema, table_name, ordinal_position
"""

INDEXES_QUERY = """
SELECT n.nspname AS schema_name,
       t.relname AS table_name,
       i.relname AS index_name,
       ix.indisunique AS is_unique,
       am.amname AS index_type,
       ARRAY(
           SELECT a.attname
           FROM unnest(ix.indkey) WITH ORDINALITY AS k(attnum, ord)
           JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum
           ORDER BY k.ord
       ) AS columns
FROM pg_index ix
JOIN pg_class i ON i.oid = ix.indexrelid
JOIN pg_class t ON t.oid = ix.indrelid
JOIN pg_namespace n ON n.oid = t.relnamespace
JOIN pg_am am ON am.oid = i.relam
WHERE n.nspname = ANY(:schemas)
ORDER BY n.nspname, t.relname, i.relname
"""

TRIGGERS_QUERY = """
SELECT n.nspname AS schema_name,
       c.relname AS table_name,
       t.tgname AS trigger_name,
       CASE
           WHEN t.tgtype & 2 = 2 THEN 'BEFORE'
           WHEN t.tgtype & 64 = 64 THEN 'INSTEAD OF'
           ELSE 'AFTER'
       END AS timing,
       array_remove(ARRAY[
           CASE WHEN t.tgtype & 4 = 4 THEN 'INSERT' END,
           CASE WHEN t.tgtype & 16 = 16 THEN 'UPDATE' END,
           CASE WHEN t.tgtype & 8 = 8 THEN 'DELETE' END,
           CASE WHEN t.tgtype & 32 = 32 THEN 'TRUNCATE' END
       ], NULL) AS events,
       p.proname AS function_name,
       pn.nspname AS function_schema,
       pg_get_triggerdef(t.oid) AS definition
FROM pg_trigger t
JOIN pg_class c ON c.oid = t.tgrelid
JOIN pg_namespace n ON n.oid = c.relnamespace
JOIN pg_proc p ON p.oid = t.tgfoid
JOIN pg_namespace pn ON pn.oid = p.pronamespace
WHERE NOT t.tgisinternal
  AND n.nspname = ANY(:schemas)
ORDER BY n.nspname, c.relname, t.tgname
"""

POLICIES_QUERY = """
SELECT n.nspname AS schema_name,
       c.relname AS table_name,
       pol.polname AS policy_name,
       pol.polcmd AS command,
       pol.polpermissive AS permissive,
       ARRAY(SELECT r.rolname FROM pg_roles r WHERE r.oid = ANY(pol.polroles)) AS roles,
       pg_get_expr(pol.polqual, pol.polrelid) AS using_expression,
       pg_get_expr(pol.polwithcheck, pol.polrelid) AS with_check_expression
FROM pg_policy pol
JOIN pg_class c ON c.oid = pol.polrelid
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = ANY(:schemas)
ORDER BY n.nspname, c.relname, pol.polname
"""

FUNCTIONS_QUERY = """
SELECT n.nspname AS schema_name,
       p.proname AS function_name,
       pg_get_function_arguments(p.oid) AS parameters,
       pg_get_function_result(p.oid) AS return_type,
       l.lanname AS language,
       p.prosrc AS body,
       p.provolatile AS volatility,
       p.prosecdef AS security_definer
FROM pg_proc p
JOIN pg_namespace n ON n.oid = p.pronamespace
JOIN pg_language l ON l.oid = p.prolang
WHERE n.nspname = ANY(:schemas)
  AND p.prokind = 'f'
  AND NOT EXISTS (
      SELECT 1 FROM pg_depend d WHERE d.objid = p.oid AND d.deptype = 'e'
  )
ORDER BY n.nspname, p.proname
"""

EXTENSIONS_QUERY = """
SELECT e.extname AS name, e.extversion AS version, n.nspname AS schema_name
FROM pg_extension e
JOIN pg_namespace n ON n.oid = e.extnamespace
WHERE e.extname <> 'plpgsql'
ORDER BY e.extname
"""

POLICY_COMMANDS = {"r": "SELECT", "a": "INSERT", "w": "UPDATE", "d": "DELETE", "*": "ALL"}
VOLATILITY = {"i": "IMMUTABLE", "s": "STABLE", "v": "VOLATILE"}
SYSTEM_TABLE_PREFIXES = ("pg_", "sql_", "_")
_TRIGGER_CONDITION = re.compile(r"\bWHEN\s+\((.*)\)\s+EXECUTE\s", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class SchemaAnalysisOptions:
    """
    Controls which object classes the analyzer extracts.

    Attributes:
        include_system_tables: Keep tables with system-like names
            (``pg_*``, ``sql_*``, ``_*``).
        include_views: Report views (names only, in the analysis result).
        include_functions: Extract stored functions.
        include_triggers: Extract triggers.
        include_policies: Extract row level security policies.
        include_indexes: Extract indexes.
        include_extensions: Extract extensions.
        schemas_to_analyze: Schemas to read.
        tables_to_exclude: Table names (plain or ``schema.table``) to drop,
            along with their indexes, triggers and policies.
    """

    include_system_tables: bool = True
    include_views: bool = False
    include_functions: bool = True
    include_triggers: bool = True
    include_policies: bool = True
    include_indexes: bool = True
    include_extensions: bool = True
    schemas_to_analyze: tuple[str, ...] = ("public", "audit")
    tables_to_exclude: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.schemas_to_analyze:
            raise ValueError("schemas_to_analyze must name at least one schema")

    def excludes(self, schema: str, table: str) -> bool:
        """True if the table is listed in ``tables_to_exclude``."""
        return table in self.tables_to_exclude or f"{schema}.{table}" in self.tables_to_exclude


@dataclass(frozen=True)
class SchemaStatistics:
    """Object counts and a rough complexity score of an analyzed schema."""

    total_tables: int = 0
    total_columns: int = 0
    total_functions: int = 0
    total_triggers: int = 0
    total_indexes: int = 0
    total_policies: int = 0
    total_extensions: int = 0
    total_views: int = 0

    @property
    def complexity_score(self) -> int:
        return (
            self.total_tables * 2
            + self.total_columns
            + self.total_functions * 5
            + self.total_triggers * 4
            + self.total_policies * 2
            + self.total_indexes
        )


@dataclass(frozen=True)
class SchemaAnalysisResult:
    """Result of analyze_schema."""

    schema: SchemaDefinition
    statistics: SchemaStatistics
    analysis_time_seconds: float
    views: tuple[str, ...] = ()


class SchemaAnalyzer:
    """
    Extracts a full schema definition from a PostgreSQL database.

    Args:
        client: Database to analyze.
        default_options: Options used when analyze_schema gets none.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        client: DatabaseClient,
        *,
        default_options: SchemaAnalysisOptions | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._client = client
        self._default_options = default_options or SchemaAnalysisOptions()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def analyze_schema(
        self,
        options: SchemaAnalysisOptions | None = None,
    ) -> SchemaAnalysisResult:
        """
        Analyze the database schema.

        Args:
            options: Extraction options (defaults to the analyzer's).

        Returns:
            SchemaAnalysisResult with the snapshot, statistics and timing.

        Raises:
            SchemaAnalysisError: If any catalog query fails.
        """
        options = options or self._default_options
        started = time.perf_counter()
        with self._tracer.span(
            "envclone.schema_analyzer.analyze_schema",
            {ATTR_SCHEMA_NAMES: ",".join(options.schemas_to_analyze)},
        ):
            try:
                schema, views = await self._extract(options)
            except SchemaAnalysisError:
                raise
            except NetworkError as e:
                raise SchemaAnalysisError(describe_error(e), transient=True) from e
            except Exception as e:
                raise SchemaAnalysisError(describe_error(e)) from e

        statistics = SchemaStatistics(
            total_tables=len(schema.tables),
            total_columns=sum(len(t.columns) for t in schema.tables),
            total_functions=len(schema.functions),
            total_triggers=len(schema.triggers),
            total_indexes=len(schema.indexes),
            total_policies=len(schema.policies),
            total_extensions=len(schema.extensions),
            total_views=len(views),
        )
        elapsed = time.perf_counter() - started
        logger.info(
            "Analyzed schemas %s: %d tables, %d functions, %d triggers, %d indexes, "
            "%d policies in %.2fs",
            ",".join(schema.schemas),
            statistics.total_tables,
            statistics.total_functions,
            statistics.total_triggers,
            statistics.total_indexes,
            statistics.total_policies,
            elapsed,
        )
        return SchemaAnalysisResult(
            schema=schema,
            statistics=statistics,
            analysis_time_seconds=elapsed,
            views=views,
        )

    async def _extract(
        self,
        options: SchemaAnalysisOptions,
    ) -> tuple[SchemaDefinition, tuple[str, ...]]:
        existing = {row["schema_name"] for row in await self._client.execute(SCHEMAS_QUERY)}
        schemas = tuple(s for s in options.schemas_to_analyze if s in existing)
        params = {"schemas": list(schemas)}

        table_rows = await self._client.execute(TABLES_QUERY, params) if schemas else []
        column_rows = await self._client.execute(COLUMNS_QUERY, params) if schemas else []
        tables, views = self._build_tables(table_rows, column_rows, options)
        kept = {t.qualified_name for t in tables}

        functions: tuple[FunctionDefinition, ...] = ()
        triggers: tuple[TriggerDefinition, ...] = ()
        indexes: tuple[IndexDefinition, ...] = ()
        policies: tuple[PolicyDefinition, ...] = ()
        extensions: tuple[ExtensionDefinition, ...] = ()

        if schemas and options.include_functions:
            functions = tuple(
                self._build_function(row)
                for row in await self._client.execute(FUNCTIONS_QUERY, params)
            )
        if schemas and options.include_triggers:
            triggers = tuple(
                trigger
                for trigger in (
                    self._build_trigger(row)
                    for row in await self._client.execute(TRIGGERS_QUERY, params)
                )
                if trigger.table_qualified_name in kept
            )
        if schemas and options.include_indexes:
            indexes = tuple(
                index
                for index in (
                    self._build_index(row)
                    for row in await self._client.execute(INDEXES_QUERY, params)
                )
                if index.table_qualified_name in kept
            )
        if schemas and options.include_policies:
            policies = tuple(
                policy
                for policy in (
                    self._build_policy(row)
                    for row in await self._client.execute(POLICIES_QUERY, params)
                )
                if policy.table_qualified_name in kept
            )
        if options.include_extensions:
            extensions = tuple(
                ExtensionDefinition(
                    name=row["name"],
                    version=row.get("version"),
                    schema=row.get("schema_name") or "public",
                )
                for row in await self._client.execute(EXTENSIONS_QUERY)
            )

        schema = SchemaDefinition(
            schemas=schemas,
            tables=tables,
            functions=functions,
            triggers=triggers,
            indexes=indexes,
            policies=policies,
            extensions=extensions,
            analyzed_at=datetime.now(UTC),
        )
        return schema, views

    def _build_tables(
        self,
        table_rows: list[Row],
        column_rows: list[Row],
        options: SchemaAnalysisOptions,
    ) -> tuple[tuple[TableDefinition, ...], tuple[str, ...]]:
        columns: dict[tuple[str, str], list[ColumnDefinition]] = defaultdict(list)
        for row in column_rows:
            columns[(row["table_schema"], row["table_name"])].append(
                ColumnDefinition(
                    name=row["column_name"],
                    data_type=_column_type(row),
                    nullable=str(row.get("is_nullable", "YES")).upper() == "YES",
                    default=row.get("column_default"),
                    ordinal_position=int(row.get("ordinal_position") or 0),
                )
            )

        tables: list[TableDefinition] = []
        views: list[str] = []
        for row in table_rows:
            schema, name = row["table_schema"], row["table_name"]
            if options.excludes(schema, name):
                logger.debug("Excluding table %s.%s", schema, name)
                continue
            if row.get("table_type") == "VIEW":
                if options.include_views:
                    views.append(f"{schema}.{name}")
                continue
            if not options.include_system_tables and name.startswith(SYSTEM_TABLE_PREFIXES):
                continue
            ordered = sorted(columns.get((schema, name), []), key=lambda c: c.ordinal_position)
            tables.append(TableDefinition(schema=schema, name=name, columns=tuple(ordered)))
        return tuple(tables), tuple(views)

    @staticmethod
    def _build_function(row: Row) -> FunctionDefinition:
        return FunctionDefinition(
            schema=row["schema_name"],
            name=row["function_name"],
            parameters=row.get("parameters") or "",
            return_type=row["return_type"],
            language=row["language"],
            body=row.get("body") or "",
            volatility=VOLATILITY.get(row.get("volatility") or "v", "VOLATILE"),
            security_definer=bool(row.get("security_definer")),
        )

    @staticmethod
    def _build_trigger(row: Row) -> TriggerDefinition:
        condition = None
        match = _TRIGGER_CONDITION.search(row.get("definition") or "")
        if match:
            condition = match.group(1).strip()
        return TriggerDefinition(
            schema=row["schema_name"],
            table=row["table_name"],
            name=row["trigger_name"],
            timing=row["timing"],
            events=tuple(_as_list(row.get("events"))),
            function_name=row["function_name"],
            function_schema=row.get("function_schema") or "public",
            condition=condition,
        )

    @staticmethod
    def _build_index(row: Row) -> IndexDefinition:
        return IndexDefinition(
            schema=row["schema_name"],
            table=row["table_name"],
            name=row["index_name"],
            columns=tuple(_as_list(row.get("columns"))),
            unique=bool(row.get("is_unique")),
            index_type=row.get("index_type") or "btree",
        )

    @staticmethod
    def _build_policy(row: Row) -> PolicyDefinition:
        command = row.get("command") or "*"
        return PolicyDefinition(
            schema=row["schema_name"],
            table=row["table_name"],
            name=row["policy_name"],
            command=POLICY_COMMANDS.get(command, command.upper()),
            permissive=bool(row.get("permissive", True)),
            roles=tuple(_as_list(row.get("roles"))),
            using_expression=row.get("using_expression"),
            with_check_expression=row.get("with_check_expression"),
        )


def _column_type(row: Row) -> str:
    """Normalize information_schema type columns into DDL type text."""
    data_type = row["data_type"]
    udt_name = row.get("udt_name") or ""
    if data_type == "USER-DEFINED" and udt_name:
        return udt_name
    if data_type == "ARRAY" and udt_name:
        return f"{udt_name.lstrip('_')}[]"
    length = row.get("character_maximum_length")
    if length and data_type in ("character varying", "character"):
        return f"{data_type}({length})"
    return data_type


def _as_list(value: Any) -> list[str]:
    """Accept driver arrays as lists or PostgreSQL ``{a,b}`` literals."""
    if value is None:
        return []
    if isinstance(value, list | tuple):
        return [str(v) for v in value]
    text = str(value).strip()
    if text.startswith("{") and text.endswith("}"):
        text = text[1:-1]
    return [part.strip().strip('"') for part in text.split(",") if part.strip()]
