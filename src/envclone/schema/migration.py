"""
Migration script generation and execution.

MigrationGenerator turns a SchemaDiff into a MigrationScript: one or two DDL
operations per difference, ordered by the same DependencyGraph the
comparator uses, plus the structural inverse of every operation in reverse
order. MigrationExecutor applies a script statement by statement with a
per-statement timeout and undoes the applied statements when one fails.

Example:
    >>> generator = MigrationGenerator()
    >>> script = generator.generate_migration_script(diff)
    >>> await MigrationExecutor().apply(script, target_client)
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from envclone.database import DatabaseClient
from envclone.exceptions import (
    MigrationExecutionError,
    MigrationGenerationError,
    OperationTimeoutError,
    SchemaDiffError,
    describe_error,
)
from envclone.observability import (
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_OPERATION_COUNT,
    Tracer,
    create_tracer,
)
from envclone.schema.graph import DependencyGraph
from envclone.schema.models import (
    ColumnDefinition,
    Difference,
    DifferenceAction,
    DifferenceType,
    ExtensionDefinition,
    FunctionDefinition,
    IndexDefinition,
    MigrationOperation,
    MigrationScript,
    OperationType,
    PolicyDefinition,
    RiskLevel,
    SchemaDiff,
    TableDefinition,
    TriggerDefinition,
)

logger = logging.getLogger(__name__)

KNOWN_LEADING_KEYWORDS = frozenset(
    {"CREATE", "ALTER", "DROP", "INSERT", "UPDATE", "DELETE", "COMMENT", "GRANT", "REVOKE"}
)

# Rough per-statement estimates in milliseconds
_DURATION_MS: dict[DifferenceType, int] = {
    DifferenceType.TABLE: 500,
    DifferenceType.FUNCTION: 200,
    DifferenceType.TRIGGER: 100,
    DifferenceType.INDEX: 2000,
    DifferenceType.POLICY: 100,
    DifferenceType.EXTENSION: 1000,
}

_DOLLAR_QUOTED = re.compile(r"\$([A-Za-z_]*)\$.*?\$\1\$", re.DOTALL)
_SINGLE_QUOTED = re.compile(r"'(?:[^']|'')*'")
_PARAMETER_DEFAULT = re.compile(r"\s+DEFAULT\s+[^,]+", re.IGNORECASE)


@dataclass(frozen=True)
class MigrationOptions:
    """
    Options for generating and applying migration scripts.

    Attributes:
        include_rollback: Generate rollback operations.
        validate_syntax: Statically check every generated statement.
        add_comments: Prefix each statement with a ``--`` description line.
        batch_size: Operations applied between progress log lines.
        timeout_per_operation_ms: Time budget of each statement.
        safe_mode: Guard statements with IF [NOT] EXISTS, build indexes
            CONCURRENTLY and never drop with CASCADE.
    """

    include_rollback: bool = True
    validate_syntax: bool = True
    add_comments: bool = True
    batch_size: int = 10
    timeout_per_operation_ms: int = 30_000
    safe_mode: bool = True

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.timeout_per_operation_ms <= 0:
            raise ValueError(
                f"timeout_per_operation_ms must be > 0, got {self.timeout_per_operation_ms}"
            )


class MigrationGenerator:
    """
    Generates executable migration scripts from schema diffs.

    Args:
        default_options: Options used when generate_migration_script gets none.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        *,
        default_options: MigrationOptions | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._default_options = default_options or MigrationOptions()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def generate_migration_script(
        self,
        diff: SchemaDiff,
        options: MigrationOptions | None = None,
    ) -> MigrationScript:
        """
        Generate a migration script.

        Args:
            diff: Differences to turn into DDL.
            options: Generation options (defaults to the generator's).

        Returns:
            MigrationScript whose operations are dependency ordered.

        Raises:
            MigrationGenerationError: If a difference lacks the state its
                action needs, or a statement fails the syntax check.
        """
        options = options or self._default_options
        script_id = f"migration_{datetime.now(UTC):%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8]}"

        with self._tracer.span(
            "envclone.migration_generator.generate",
            {ATTR_MIGRATION_ID: script_id},
        ):
            graph: DependencyGraph[MigrationOperation] = DependencyGraph()
            sources: dict[str, Difference] = {}
            for position, difference in enumerate(diff.differences):
                for step, operation in enumerate(self._operations_for(difference, options)):
                    if operation.id in sources:
                        raise MigrationGenerationError(
                            f"Duplicate migration operation {operation.id}"
                        )
                    sources[operation.id] = difference
                    graph.add(
                        operation,
                        provides=operation.object_name,
                        requires=operation.dependencies,
                        rank=position * 2 + step,
                    )
            try:
                operations = tuple(graph.sort())
            except SchemaDiffError as e:
                raise MigrationGenerationError(e.message) from e

            rollback_operations: tuple[MigrationOperation, ...] = ()
            if options.include_rollback:
                rollback_operations = tuple(
                    self._inverse(op, sources[op.id], options) for op in reversed(operations)
                )

            if options.validate_syntax:
                for operation in (*operations, *rollback_operations):
                    problems = validate_sql(operation.sql)
                    if problems:
                        raise MigrationGenerationError(
                            f"Generated SQL for {operation.id} is invalid: {'; '.join(problems)}"
                        )

        script = MigrationScript(
            id=script_id,
            operations=operations,
            rollback_operations=rollback_operations,
            estimated_duration_ms=sum(op.estimated_duration_ms for op in operations),
            risk_level=overall_risk(operations),
        )
        logger.info(
            "Generated migration %s: %d operations, %d rollback operations, risk %s",
            script.id,
            len(script.operations),
            len(script.rollback_operations),
            script.risk_level.value,
        )
        return script

    def _operations_for(
        self,
        difference: Difference,
        options: MigrationOptions,
    ) -> list[MigrationOperation]:
        _check_difference(difference)
        kind, action = difference.type, difference.action
        before, after = difference.details.before, difference.details.after

        if action == DifferenceAction.CREATE:
            return [self._op(difference, create_sql(after, options), options)]
        if action == DifferenceAction.DROP:
            return [self._op(difference, drop_sql(before, options), options)]

        if kind == DifferenceType.TABLE:
            return [self._op(difference, alter_table_sql(before, after, options), options)]
        if kind == DifferenceType.FUNCTION and not signature_changed(before, after):
            return [self._op(difference, create_sql(after, options), options)]
        if kind == DifferenceType.TRIGGER:
            return [self._op(difference, create_trigger_sql(after, replace=True), options)]
        if kind == DifferenceType.EXTENSION:
            return [self._op(difference, alter_extension_sql(after), options)]

        # Indexes, policies and functions with a new signature are rebuilt
        prepare = self._op(difference, drop_sql(before, options), options, suffix="_prepare")
        return [
            MigrationOperation(
                id=prepare.id,
                type=prepare.type,
                description=f"Drop {kind.value} {difference.object_name} before rebuilding",
                sql=prepare.sql,
                object_name=prepare.object_name,
                risk_level=RiskLevel.MEDIUM,
                estimated_duration_ms=prepare.estimated_duration_ms,
            ),
            self._op(difference, create_sql(after, options), options),
        ]

    def _op(
        self,
        difference: Difference,
        sql: str,
        options: MigrationOptions,
        *,
        suffix: str = "",
    ) -> MigrationOperation:
        kind, action = difference.type, difference.action
        description = f"{action.value.capitalize()} {kind.value} {difference.object_name}"
        return MigrationOperation(
            id=f"{kind.value}_{action.value}_{difference.qualified_name}{suffix}",
            type=OperationType.DDL,
            description=description,
            sql=_with_comment(sql, f"{description} ({difference.qualified_name})", options),
            object_name=difference.qualified_name,
            dependencies=difference.dependencies,
            risk_level=risk_for(kind, action),
            estimated_duration_ms=_DURATION_MS[kind],
        )

    def _inverse(
        self,
        operation: MigrationOperation,
        difference: Difference,
        options: MigrationOptions,
    ) -> MigrationOperation:
        kind, action = difference.type, difference.action
        before, after = difference.details.before, difference.details.after

        if operation.id.endswith("_prepare"):
            sql = create_sql(before, options)
            description = f"Restore {kind.value} {difference.object_name}"
        elif action == DifferenceAction.CREATE:
            sql = drop_sql(after, options)
            description = f"Drop {kind.value} {difference.object_name}"
        elif action == DifferenceAction.DROP:
            sql = create_sql(before, options)
            description = f"Recreate {kind.value} {difference.object_name}"
        elif kind == DifferenceType.TABLE:
            sql = alter_table_sql(after, before, options)
            description = f"Revert table {difference.object_name}"
        elif kind == DifferenceType.TRIGGER:
            sql = create_trigger_sql(before, replace=True)
            description = f"Revert trigger {difference.object_name}"
        elif kind == DifferenceType.EXTENSION:
            sql = alter_extension_sql(before)
            description = f"Revert extension {difference.object_name}"
        elif kind == DifferenceType.FUNCTION and not signature_changed(before, after):
            sql = create_sql(before, options)
            description = f"Revert function {difference.object_name}"
        else:
            sql = drop_sql(after, options)
            description = f"Drop rebuilt {kind.value} {difference.object_name}"

        return MigrationOperation(
            id=f"rollback_{operation.id}",
            type=OperationType.DDL,
            description=description,
            sql=_with_comment(sql, description, options),
            object_name=operation.object_name,
            risk_level=operation.risk_level,
            estimated_duration_ms=operation.estimated_duration_ms,
        )


@dataclass(frozen=True)
class MigrationExecutionResult:
    """Outcome of MigrationExecutor.apply."""

    migration_id: str
    applied_operations: tuple[str, ...]
    duration_seconds: float


class MigrationExecutor:
    """
    Applies migration scripts to a database.

    Each statement runs on its own (CREATE INDEX CONCURRENTLY cannot run
    inside a transaction) under ``asyncio.wait_for``. When a statement fails
    or times out, the rollback operations of the statements already applied
    run in reverse order and MigrationExecutionError is raised.
    """

    def __init__(
        self,
        options: MigrationOptions | None = None,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._options = options or MigrationOptions()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    async def apply(
        self,
        script: MigrationScript,
        client: DatabaseClient,
        *,
        operation_id: str | None = None,
    ) -> MigrationExecutionResult:
        """
        Apply a script.

        Args:
            script: Script to apply.
            client: Target database.
            operation_id: Clone operation for error context.

        Raises:
            MigrationExecutionError: If a statement fails; carries the
                applied operation ids and whether they were rolled back.
        """
        started = time.perf_counter()
        timeout = self._options.timeout_per_operation_ms / 1000.0
        applied: list[MigrationOperation] = []

        with self._tracer.span(
            "envclone.migration_executor.apply",
            {
                ATTR_MIGRATION_ID: script.id,
                ATTR_MIGRATION_OPERATION_COUNT: len(script.operations),
            },
        ):
            for operation in script.operations:
                try:
                    await self._run(operation, client, timeout)
                except Exception as e:
                    rolled_back = await self._rollback(script, applied, client, timeout)
                    raise MigrationExecutionError(
                        f"Migration {script.id} failed at {operation.id}: {describe_error(e)}",
                        failed_operation_id=operation.id,
                        applied_operations=[op.id for op in applied],
                        rolled_back=rolled_back,
                        operation_id=operation_id,
                    ) from e
                applied.append(operation)
                if len(applied) % self._options.batch_size == 0:
                    logger.info(
                        "Migration %s: %d/%d operations applied",
                        script.id,
                        len(applied),
                        len(script.operations),
                    )

        elapsed = time.perf_counter() - started
        logger.info(
            "Applied migration %s (%d operations) in %.2fs",
            script.id,
            len(applied),
            elapsed,
        )
        return MigrationExecutionResult(
            migration_id=script.id,
            applied_operations=tuple(op.id for op in applied),
            duration_seconds=elapsed,
        )

    @staticmethod
    async def _run(operation: MigrationOperation, client: DatabaseClient, timeout: float) -> None:
        logger.debug("Applying %s: %s", operation.id, operation.description)
        try:
            await asyncio.wait_for(client.execute(operation.sql), timeout=timeout)
        except TimeoutError as e:
            raise OperationTimeoutError(
                f"{operation.id} exceeded its {timeout:.1f}s timeout",
                timeout_seconds=timeout,
            ) from e

    async def _rollback(
        self,
        script: MigrationScript,
        applied: list[MigrationOperation],
        client: DatabaseClient,
        timeout: float,
    ) -> bool:
        if not applied:
            return True
        inverses = {op.id: op for op in script.rollback_operations}
        missing = [op.id for op in applied if f"rollback_{op.id}" not in inverses]
        if missing:
            logger.error(
                "Cannot roll back migration %s: no rollback for %s",
                script.id,
                ", ".join(missing),
            )
            return False

        logger.warning("Rolling back %d applied operations of %s", len(applied), script.id)
        for operation in reversed(applied):
            inverse = inverses[f"rollback_{operation.id}"]
            try:
                await self._run(inverse, client, timeout)
            except Exception as e:
                logger.error(
                    "Rollback of %s stopped at %s: %s",
                    script.id,
                    inverse.id,
                    describe_error(e),
                )
                return False
        return True


def risk_for(kind: DifferenceType, action: DifferenceAction) -> RiskLevel:
    """Risk of one (type, action) change."""
    if action == DifferenceAction.DROP:
        if kind in (DifferenceType.FUNCTION, DifferenceType.EXTENSION):
            return RiskLevel.MEDIUM
        return RiskLevel.HIGH
    if action == DifferenceAction.ALTER:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def overall_risk(operations: tuple[MigrationOperation, ...]) -> RiskLevel:
    """High if any operation is high, medium if most are medium, low otherwise."""
    if any(op.risk_level == RiskLevel.HIGH for op in operations):
        return RiskLevel.HIGH
    medium = sum(1 for op in operations if op.risk_level == RiskLevel.MEDIUM)
    if operations and medium > len(operations) / 2:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def validate_sql(sql: str) -> list[str]:
    """
    Static sanity check of one generated statement.

    Checks for a known leading keyword, balanced parentheses outside quoted
    text and a terminating semicolon. Comment lines are ignored.

    Returns:
        Problems found, empty when the statement looks valid.
    """
    lines = [
        line for line in sql.splitlines() if line.strip() and not line.strip().startswith("--")
    ]
    if not lines:
        return ["statement is empty"]

    problems: list[str] = []
    keyword = lines[0].strip().split(None, 1)[0].upper()
    if keyword not in KNOWN_LEADING_KEYWORDS:
        problems.append(f"unexpected leading keyword {keyword!r}")

    body = "\n".join(lines)
    stripped = _SINGLE_QUOTED.sub("''", _DOLLAR_QUOTED.sub("$$", body))
    depth = 0
    for char in stripped:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                break
    if depth != 0:
        problems.append("unbalanced parentheses")

    if not body.rstrip().endswith(";"):
        problems.append("missing terminating semicolon")
    return problems


def _check_difference(difference: Difference) -> None:
    before, after = difference.details.before, difference.details.after
    name = difference.qualified_name
    if difference.action == DifferenceAction.CREATE and after is None:
        raise MigrationGenerationError(f"Create difference for {name} has no 'after' definition")
    if difference.action == DifferenceAction.DROP and before is None:
        raise MigrationGenerationError(f"Drop difference for {name} has no 'before' definition")
    if difference.action == DifferenceAction.ALTER and (before is None or after is None):
        raise MigrationGenerationError(
            f"Alter difference for {name} needs both 'before' and 'after' definitions"
        )


def _with_comment(sql: str, description: str, options: MigrationOptions) -> str:
    if not options.add_comments:
        return sql
    return f"-- {description}\n{sql}"


def create_sql(obj: object, options: MigrationOptions) -> str:
    """CREATE statement for any schema object."""
    if isinstance(obj, TableDefinition):
        return create_table_sql(obj, options)
    if isinstance(obj, FunctionDefinition):
        return create_function_sql(obj)
    if isinstance(obj, TriggerDefinition):
        return create_trigger_sql(obj)
    if isinstance(obj, IndexDefinition):
        return create_index_sql(obj, options)
    if isinstance(obj, PolicyDefinition):
        return create_policy_sql(obj)
    if isinstance(obj, ExtensionDefinition):
        version = f" VERSION '{obj.version}'" if obj.version else ""
        return f'CREATE EXTENSION IF NOT EXISTS "{obj.name}" WITH SCHEMA {obj.schema}{version};'
    raise MigrationGenerationError(f"Cannot generate DDL for {type(obj).__name__}")


def drop_sql(obj: object, options: MigrationOptions) -> str:
    """DROP statement for any schema object."""
    cascade = "" if options.safe_mode else " CASCADE"
    if isinstance(obj, TableDefinition):
        return f"DROP TABLE IF EXISTS {obj.qualified_name}{cascade};"
    if isinstance(obj, FunctionDefinition):
        arguments = _PARAMETER_DEFAULT.sub("", obj.parameters)
        return f"DROP FUNCTION IF EXISTS {obj.qualified_name}({arguments}){cascade};"
    if isinstance(obj, TriggerDefinition):
        return f"DROP TRIGGER IF EXISTS {obj.name} ON {obj.table_qualified_name}{cascade};"
    if isinstance(obj, IndexDefinition):
        concurrently = " CONCURRENTLY" if options.safe_mode else ""
        return f"DROP INDEX{concurrently} IF EXISTS {obj.schema}.{obj.name}{cascade};"
    if isinstance(obj, PolicyDefinition):
        return f"DROP POLICY IF EXISTS {obj.name} ON {obj.table_qualified_name};"
    if isinstance(obj, ExtensionDefinition):
        return f'DROP EXTENSION IF EXISTS "{obj.name}"{cascade};'
    raise MigrationGenerationError(f"Cannot generate DDL for {type(obj).__name__}")


def column_sql(column: ColumnDefinition) -> str:
    """Column clause of a CREATE TABLE / ADD COLUMN."""
    parts = [column.name, column.data_type]
    if not column.nullable:
        parts.append("NOT NULL")
    if column.default is not None:
        parts.append(f"DEFAULT {column.default}")
    return " ".join(parts)


def create_table_sql(table: TableDefinition, options: MigrationOptions) -> str:
    if_not_exists = " IF NOT EXISTS" if options.safe_mode else ""
    columns = ",\n".join(f"    {column_sql(c)}" for c in table.columns)
    return f"CREATE TABLE{if_not_exists} {table.qualified_name} (\n{columns}\n);"


def alter_table_sql(
    before: TableDefinition,
    after: TableDefinition,
    options: MigrationOptions,
) -> str:
    """ALTER TABLE turning ``before`` into ``after`` column by column."""
    actions: list[str] = []
    old = {c.name: c for c in before.columns}
    new = {c.name: c for c in after.columns}

    for name, column in new.items():
        if name not in old:
            actions.append(f"ADD COLUMN IF NOT EXISTS {column_sql(column)}")
            continue
        previous = old[name]
        if previous.data_type != column.data_type:
            actions.append(
                f"ALTER COLUMN {name} TYPE {column.data_type} USING {name}::{column.data_type}"
            )
        if previous.nullable != column.nullable:
            actions.append(f"ALTER COLUMN {name} {'DROP' if column.nullable else 'SET'} NOT NULL")
        if previous.default != column.default:
            if column.default is None:
                actions.append(f"ALTER COLUMN {name} DROP DEFAULT")
            else:
                actions.append(f"ALTER COLUMN {name} SET DEFAULT {column.default}")
    cascade = "" if options.safe_mode else " CASCADE"
    for name in old:
        if name not in new:
            actions.append(f"DROP COLUMN IF EXISTS {name}{cascade}")

    if not actions:
        comment = (after.comment or "").replace("'", "''")
        return f"COMMENT ON TABLE {after.qualified_name} IS '{comment}';"
    body = ",\n".join(f"    {action}" for action in actions)
    return f"ALTER TABLE {after.qualified_name}\n{body};"


def create_function_sql(function: FunctionDefinition) -> str:
    security = "\nSECURITY DEFINER" if function.security_definer else ""
    return (
        f"CREATE OR REPLACE FUNCTION {function.qualified_name}({function.parameters})\n"
        f"RETURNS {function.return_type}\n"
        f"LANGUAGE {function.language}\n"
        f"{function.volatility}{security}\n"
        f"AS $function$\n{function.body.strip()}\n$function$;"
    )


def create_trigger_sql(trigger: TriggerDefinition, *, replace: bool = False) -> str:
    verb = "CREATE OR REPLACE TRIGGER" if replace else "CREATE TRIGGER"
    when = f"\n    WHEN ({trigger.condition})" if trigger.condition else ""
    return (
        f"{verb} {trigger.name}\n"
        f"    {trigger.timing} {' OR '.join(trigger.events)} ON {trigger.table_qualified_name}\n"
        f"    FOR EACH ROW{when}\n"
        f"    EXECUTE FUNCTION {trigger.function_qualified_name}();"
    )


def create_index_sql(index: IndexDefinition, options: MigrationOptions) -> str:
    unique = "UNIQUE " if index.unique else ""
    concurrently = "CONCURRENTLY " if options.safe_mode else ""
    if_not_exists = "IF NOT EXISTS " if options.safe_mode else ""
    return (
        f"CREATE {unique}INDEX {concurrently}{if_not_exists}{index.name} "
        f"ON {index.table_qualified_name} USING {index.index_type} ({', '.join(index.columns)});"
    )


def create_policy_sql(policy: PolicyDefinition) -> str:
    lines = [
        f"CREATE POLICY {policy.name} ON {policy.table_qualified_name}",
        f"    AS {'PERMISSIVE' if policy.permissive else 'RESTRICTIVE'}",
        f"    FOR {policy.command}",
    ]
    if policy.roles:
        lines.append(f"    TO {', '.join(policy.roles)}")
    if policy.using_expression:
        lines.append(f"    USING ({policy.using_expression})")
    if policy.with_check_expression:
        lines.append(f"    WITH CHECK ({policy.with_check_expression})")
    return "\n".join(lines) + ";"


def alter_extension_sql(extension: ExtensionDefinition) -> str:
    if extension.version:
        return f"ALTER EXTENSION \"{extension.name}\" UPDATE TO '{extension.version}';"
    return f'ALTER EXTENSION "{extension.name}" UPDATE;'


def signature_changed(before: object, after: object) -> bool:
    """
    True when two versions of a function differ in arguments or return type.

    CREATE OR REPLACE FUNCTION cannot change either, so such a function is
    dropped and created again.
    """
    if not isinstance(before, FunctionDefinition) or not isinstance(after, FunctionDefinition):
        return False
    return _normalized(before.return_type) != _normalized(after.return_type) or _normalized(
        before.parameters
    ) != _normalized(after.parameters)


def _normalized(text: str) -> str:
    return " ".join(text.lower().split())
