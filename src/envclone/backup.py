"""
Backup points of a target environment.

A backup point is a dedicated schema (``backup_<hex>``) holding one copy per
backed-up table, a ``_manifest`` table describing them and a ``_migration``
table with the statements undoing the schema migration applied after the
backup was taken. Restoring first reverts that migration, recreates any
backed-up table that is still missing, then replaces the contents of every
listed table inside one transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

from envclone.copying import TableCopier
from envclone.database import DatabaseClient, Row
from envclone.exceptions import BackupError, NetworkError, describe_error
from envclone.models import Environment, RollbackResult, RollbackStatus
from envclone.observability import (
    ATTR_BACKUP_ID,
    ATTR_OPERATION_ID,
    ATTR_TARGET_ENVIRONMENT,
    Tracer,
    create_tracer,
)
from envclone.schema.models import MigrationScript, TableDefinition

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup_"
MANIFEST_TABLE = "_manifest"
MIGRATION_TABLE = "_migration"

SCHEMA_EXISTS_QUERY = (
    "SELECT schema_name FROM information_schema.schemata WHERE schema_name = :schema"
)


@dataclass(frozen=True)
class BackupEntry:
    """One table of a backup point."""

    position: int
    source_table: str
    backup_table: str
    row_count: int
    columns: tuple[str, ...] = ()


@dataclass(frozen=True)
class BackupPoint:
    """
    A backup point taken before a clone writes to its target.

    Attributes:
        backup_id: Schema holding the copies.
        environment_id: Environment the backup belongs to.
        entries: Backed-up tables, in dependency order.
        created_at: When the backup was taken (UTC).
    """

    backup_id: str
    environment_id: str
    entries: tuple[BackupEntry, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def table_count(self) -> int:
        return len(self.entries)

    @property
    def row_count(self) -> int:
        return sum(entry.row_count for entry in self.entries)


def backup_table_name(backup_id: str, qualified_name: str) -> str:
    """
    Name of the copy of ``qualified_name`` inside a backup schema.

    Example:
        >>> backup_table_name("backup_1a2b", "public.users")
        'backup_1a2b.public__users'
    """
    schema, _, table = qualified_name.rpartition(".")
    return f"{backup_id}.{schema or 'public'}__{table}"


def is_backup_id(value: str) -> bool:
    """Backup ids are plain identifiers with the backup prefix."""
    suffix = value[len(BACKUP_PREFIX):]
    return value.startswith(BACKUP_PREFIX) and bool(suffix) and suffix.isalnum()


@dataclass(frozen=True)
class _Manifest:
    entries: tuple[BackupEntry, ...] = ()
    statements: tuple[str, ...] = ()


class BackupManager:
    """
    Creates, restores and drops backup points.

    Example:
        >>> manager = BackupManager()
        >>> point = await manager.create_backup(client, training, tables)
        >>> result = await manager.restore_backup(client, training, point.backup_id)
        >>> result.status
        <RollbackStatus.RESTORED: 'restored'>
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._copier = TableCopier(tracer=self._tracer)

    async def create_backup(
        self,
        client: DatabaseClient,
        environment: Environment,
        tables: Sequence[TableDefinition],
        *,
        operation_id: str | None = None,
    ) -> BackupPoint:
        """
        Copy ``tables`` into a new backup schema.

        Args:
            client: Client of the environment to back up.
            environment: The environment (for logging and the result).
            tables: Tables to back up, in dependency order.
            operation_id: Owning clone operation, for log context.

        Raises:
            BackupError: If any copy or the manifest cannot be written.
        """
        backup_id = f"{BACKUP_PREFIX}{uuid4().hex[:16]}"
        with self._tracer.span(
            "envclone.backup.create",
            {
                ATTR_BACKUP_ID: backup_id,
                ATTR_TARGET_ENVIRONMENT: environment.id,
                ATTR_OPERATION_ID: operation_id or "",
            },
        ):
            try:
                entries = await self._write_backup(client, backup_id, tables)
            except Exception as e:
                logger.error(
                    "Backup of %s failed [operation=%s]: %s",
                    environment.name,
                    operation_id or "-",
                    describe_error(e),
                )
                raise BackupError(
                    f"Failed to create backup of {environment.name}: {describe_error(e)}",
                    operation_id=operation_id,
                ) from e

        point = BackupPoint(backup_id, environment.id, entries)
        logger.info(
            "Created backup %s of %s: %d tables, %d rows",
            backup_id,
            environment.name,
            point.table_count,
            point.row_count,
        )
        return point

    async def record_migration(
        self,
        client: DatabaseClient,
        backup_id: str,
        script: MigrationScript,
    ) -> int:
        """
        Store the rollback statements of a migration applied after the backup.

        restore_backup runs them before restoring data, so tables the
        migration dropped or changed are back in their backed-up shape.

        Returns:
            Number of statements recorded.

        Raises:
            BackupError: If the statements cannot be written.
        """
        statements = [op.sql for op in script.rollback_operations]
        if not statements:
            return 0
        try:
            await client.execute_many(
                f"INSERT INTO {backup_id}.{MIGRATION_TABLE} (position, statement) "
                "VALUES (:position, :statement)",
                [{"position": i, "statement": sql} for i, sql in enumerate(statements)],
            )
        except Exception as e:
            raise BackupError(
                f"Failed to record migration {script.id} in backup {backup_id}: "
                f"{describe_error(e)}"
            ) from e
        logger.debug(
            "Recorded %d rollback statements of %s in backup %s",
            len(statements),
            script.id,
            backup_id,
        )
        return len(statements)

    async def restore_backup(
        self,
        client: DatabaseClient,
        environment: Environment,
        backup_id: str,
    ) -> RollbackResult:
        """
        Restore the schema and every table of a backup point.

        A missing or unreadable backup is not an error: the result carries
        ``RollbackStatus.WARNING`` and nothing is touched.

        Raises:
            BackupError: If restoring an existing, readable backup fails.
        """
        with self._tracer.span(
            "envclone.backup.restore",
            {ATTR_BACKUP_ID: backup_id, ATTR_TARGET_ENVIRONMENT: environment.id},
        ):
            manifest, problem = await self._load_manifest(client, backup_id)
            if problem is not None:
                logger.warning("Rollback of %s skipped: %s", environment.name, problem)
                return RollbackResult(
                    environment.id, backup_id, RollbackStatus.WARNING, warnings=(problem,)
                )
            entries, statements = manifest.entries, manifest.statements

            try:
                # Schema first: each statement on its own, DROP INDEX
                # CONCURRENTLY cannot run inside a transaction
                for statement in statements:
                    await client.execute(statement)
                for entry in entries:
                    await client.execute(
                        f"CREATE TABLE IF NOT EXISTS {entry.source_table} "
                        f"AS TABLE {entry.backup_table} WITH NO DATA"
                    )
                async with client.transaction() as tx:
                    for entry in reversed(entries):
                        await tx.execute(f"DELETE FROM {entry.source_table}")
                    for entry in entries:
                        await tx.execute(_restore_sql(entry))
            except Exception as e:
                raise BackupError(
                    f"Failed to restore backup {backup_id} into {environment.name}: "
                    f"{describe_error(e)}"
                ) from e

        restored = tuple(entry.source_table for entry in entries)
        logger.info(
            "Restored %d tables of %s from backup %s (%d schema statements reverted)",
            len(restored),
            environment.name,
            backup_id,
            len(statements),
        )
        return RollbackResult(environment.id, backup_id, RollbackStatus.RESTORED, restored)

    async def drop_backup(self, client: DatabaseClient, backup_id: str) -> None:
        """Remove a backup schema and everything in it."""
        if not is_backup_id(backup_id):
            raise ValueError(f"Not a backup id: {backup_id!r}")
        await client.execute(f"DROP SCHEMA IF EXISTS {backup_id} CASCADE")
        logger.debug("Dropped backup %s", backup_id)

    async def _write_backup(
        self,
        client: DatabaseClient,
        backup_id: str,
        tables: Sequence[TableDefinition],
    ) -> tuple[BackupEntry, ...]:
        await client.execute(f"CREATE SCHEMA {backup_id}")
        entries: list[BackupEntry] = []
        for position, table in enumerate(tables):
            copy_name = backup_table_name(backup_id, table.qualified_name)
            await client.execute(f"CREATE TABLE {copy_name} AS TABLE {table.qualified_name}")
            row_count = await self._copier.count_rows(client, copy_name)
            entries.append(
                BackupEntry(
                    position,
                    table.qualified_name,
                    copy_name,
                    row_count,
                    tuple(table.column_names),
                )
            )

        await client.execute(
            f"CREATE TABLE {backup_id}.{MANIFEST_TABLE} ("
            "position integer NOT NULL, source_table text NOT NULL, "
            "backup_table text NOT NULL, row_count bigint NOT NULL, columns text NOT NULL)"
        )
        await client.execute(
            f"CREATE TABLE {backup_id}.{MIGRATION_TABLE} ("
            "position integer NOT NULL, statement text NOT NULL)"
        )
        if entries:
            await client.execute_many(
                f"INSERT INTO {backup_id}.{MANIFEST_TABLE} "
                "(position, source_table, backup_table, row_count, columns) "
                "VALUES (:position, :source_table, :backup_table, :row_count, :columns)",
                [
                    {
                        "position": e.position,
                        "source_table": e.source_table,
                        "backup_table": e.backup_table,
                        "row_count": e.row_count,
                        "columns": ",".join(e.columns),
                    }
                    for e in entries
                ],
            )
        return tuple(entries)

    async def _load_manifest(
        self,
        client: DatabaseClient,
        backup_id: str,
    ) -> tuple[_Manifest, str | None]:
        if not is_backup_id(backup_id):
            return _Manifest(), f"Backup {backup_id!r} not found"
        found = await client.execute(SCHEMA_EXISTS_QUERY, {"schema": backup_id})
        if not found:
            return _Manifest(), f"Backup {backup_id} not found"
        try:
            rows = await client.execute(
                "SELECT position, source_table, backup_table, row_count, columns "
                f"FROM {backup_id}.{MANIFEST_TABLE} ORDER BY position"
            )
            entries = tuple(_entry(row) for row in rows)
            statements = await client.execute(
                f"SELECT position, statement FROM {backup_id}.{MIGRATION_TABLE} ORDER BY position"
            )
        except NetworkError:
            raise
        except Exception as e:
            logger.warning("Manifest of backup %s unreadable: %s", backup_id, describe_error(e))
            return _Manifest(), f"Backup {backup_id} is corrupt: manifest unreadable"
        return _Manifest(entries, tuple(str(row["statement"]) for row in statements)), None


def _entry(row: Row) -> BackupEntry:
    columns = str(row.get("columns") or "")
    return BackupEntry(
        position=int(row["position"]),
        source_table=str(row["source_table"]),
        backup_table=str(row["backup_table"]),
        row_count=int(row["row_count"]),
        columns=tuple(c for c in columns.split(",") if c),
    )


def _restore_sql(entry: BackupEntry) -> str:
    if not entry.columns:
        return f"INSERT INTO {entry.source_table} SELECT * FROM {entry.backup_table}"
    columns = ", ".join(entry.columns)
    return (
        f"INSERT INTO {entry.source_table} ({columns}) "
        f"SELECT {columns} FROM {entry.backup_table}"
    )
