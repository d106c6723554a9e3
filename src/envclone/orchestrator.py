"""
EnvironmentCloner - Orchestrates a full environment clone.

A clone runs through five phases, each recorded on its operation:

    1. Schema Analysis and Migration: analyze both schemas, back up the
       target, apply the migration that makes the target schema match
    2. Data Cloning: copy tables that need no anonymization; defer the rest
    3. Data Anonymization: copy deferred tables, anonymizing page by page
    4. Specialized Systems Cloning: audit, conversations, reservations,
       bill notifications, transaction references
    5. Final Validation: verify the target against the source

Raw values of tables with anonymization rules never reach the target: every
page is anonymized before it is written. Every table copy clears its target
table first, so a retried copy never duplicates rows. Any failure marks the
operation failed, restores the target from its backup point and is reported
in the returned CloneResult instead of being raised. The backup point of a
successful clone is dropped unless ``keep_backup`` is set.

Usage:
    >>> cloner = EnvironmentCloner(sqlalchemy_client_provider)
    >>> result = await cloner.clone_environment(production, training)
    >>> result.success, result.statistics.total_size_cloned
    (True, '12.4 MB')
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar

from envclone.anonymization import (
    ROLE_COLUMNS,
    AnonymizationConfig,
    AnonymizationOrchestrator,
    TableAnonymizer,
    suggest_rules,
)
from envclone.backup import BackupManager
from envclone.copying import TableCopier, TableCopyResult
from envclone.database import ClientProvider, DatabaseClient, sqlalchemy_client_provider
from envclone.events import Dashboard, EventChannel
from envclone.exceptions import (
    CloneError,
    ErrorHandler,
    OperationTimeoutError,
    RetryConfig,
    SpecializedCloneError,
    describe_error,
)
from envclone.models import (
    AnonymizationRule,
    ClonePhase,
    CloneOptions,
    CloneResult,
    Environment,
    RollbackResult,
)
from envclone.observability import (
    ATTR_OPERATION_ID,
    ATTR_PHASE,
    ATTR_SOURCE_ENVIRONMENT,
    ATTR_TARGET_ENVIRONMENT,
    Tracer,
    create_tracer,
)
from envclone.operations import OperationRegistry, OperationSnapshot, OperationWriter
from envclone.safety import ProductionSafetyGuard
from envclone.schema import (
    ComparisonOptions,
    DifferenceAction,
    DifferenceType,
    MigrationExecutor,
    MigrationGenerator,
    MigrationOptions,
    SchemaAnalysisOptions,
    SchemaAnalyzer,
    SchemaComparator,
    SchemaDefinition,
    SchemaDiff,
    TableDefinition,
)
from envclone.specialized import SpecializedCloneOptions, SpecializedSystemsCloner
from envclone.validation import ValidationEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPONENT = "CloneOrchestrator"


class CloneCancelledError(Exception):
    """Raised inside a clone when cancellation was requested."""


@dataclass
class _CloneRun:
    """State of one running clone, owned by its task."""

    source: Environment
    target: Environment
    options: CloneOptions
    writer: OperationWriter
    source_client: DatabaseClient
    target_client: DatabaseClient
    result: CloneResult
    source_schema: SchemaDefinition | None = None
    rules: tuple[AnonymizationRule, ...] = ()
    anonymizer: AnonymizationOrchestrator | None = None
    deferred: list[TableDefinition] = field(default_factory=list)
    copied_tables: list[str] = field(default_factory=list)

    @property
    def operation_id(self) -> str:
        return self.writer.operation_id


class EnvironmentCloner:
    """
    Clones one environment into another.

    Clones into different targets run concurrently; clones into the same
    target are serialized.

    Args:
        client_provider: Opens a database client for an environment.
        guard: Production safety guard.
        analysis_options: Schema analysis options for both environments.
        comparison_options: Schema comparison options.
        migration_options: Migration generation and execution options.
        specialized: Cloner of the specialized systems.
        backup_manager: Creates and restores backup points.
        validation: Post-clone validation engine.
        registry: Operation registry (one is created if omitted).
        events: Event channel receiving progress and dashboard events.
        error_handler: Retry machinery for database steps.
        raise_on_safety_violation: Raise ProductionAccessError instead of
            returning a failed CloneResult when the guard blocks a clone.
        retry_base_delay_ms: Base delay of the exponential retry backoff.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        client_provider: ClientProvider | None = None,
        *,
        guard: ProductionSafetyGuard | None = None,
        analysis_options: SchemaAnalysisOptions | None = None,
        comparison_options: ComparisonOptions | None = None,
        migration_options: MigrationOptions | None = None,
        specialized: SpecializedSystemsCloner | None = None,
        backup_manager: BackupManager | None = None,
        validation: ValidationEngine | None = None,
        registry: OperationRegistry | None = None,
        events: EventChannel | None = None,
        error_handler: ErrorHandler | None = None,
        raise_on_safety_violation: bool = False,
        retry_base_delay_ms: float = 100.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._client_provider = client_provider or sqlalchemy_client_provider
        self._guard = guard or ProductionSafetyGuard(tracer=self._tracer)
        self._error_handler = error_handler or ErrorHandler()
        self._analysis_options = analysis_options or SchemaAnalysisOptions()
        self._comparator = SchemaComparator(
            default_options=comparison_options, tracer=self._tracer
        )
        self._migration_options = migration_options or MigrationOptions()
        self._generator = MigrationGenerator(
            default_options=self._migration_options, tracer=self._tracer
        )
        self._executor = MigrationExecutor(self._migration_options, tracer=self._tracer)
        self._specialized = specialized or SpecializedSystemsCloner(
            self._client_provider,
            guard=self._guard,
            error_handler=self._error_handler,
            tracer=self._tracer,
            retry_base_delay_ms=retry_base_delay_ms,
        )
        self._backup = backup_manager or BackupManager(tracer=self._tracer)
        self._validation = validation or ValidationEngine(
            self._client_provider, guard=self._guard, tracer=self._tracer
        )
        self._events = events
        self._registry = registry or OperationRegistry(events)
        self._raise_on_safety_violation = raise_on_safety_violation
        self._retry_base_delay_ms = retry_base_delay_ms
        self._target_locks: dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    async def clone_environment(
        self,
        source: Environment,
        target: Environment,
        options: CloneOptions | None = None,
    ) -> CloneResult:
        """
        Clone ``source`` into ``target``.

        Args:
            source: Environment to read from (typically read-only production).
            target: Environment to overwrite.
            options: Clone options (CloneOptions.default() if omitted).

        Returns:
            CloneResult; ``success`` is False when the clone was blocked,
            failed or was cancelled.

        Raises:
            ProductionAccessError: Only with ``raise_on_safety_violation``.
        """
        options = options or CloneOptions.default()
        started = time.monotonic()
        writer = self._registry.create(source.id, target.id)
        operation_id = writer.operation_id
        result = CloneResult(
            success=False,
            operation_id=operation_id,
            source_environment_id=source.id,
            target_environment_id=target.id,
        )
        if self._events is not None:
            self._events.create_dashboard(
                Dashboard(
                    operation_id,
                    f"Clone {source.name} -> {target.name}",
                    widgets=("progress", "statistics"),
                )
            )

        with self._tracer.span(
            "envclone.orchestrator.clone_environment",
            {
                ATTR_OPERATION_ID: operation_id,
                ATTR_SOURCE_ENVIRONMENT: source.id,
                ATTR_TARGET_ENVIRONMENT: target.id,
            },
        ):
            writer.info(COMPONENT, f"Starting clone {source.name} -> {target.name}")
            safety = self._guard.validate(source, target)
            if not safety.allowed:
                message = safety.errors[0] if safety.errors else "Clone blocked"
                result.errors.extend(safety.errors)
                writer.fail(message)
                result.duration_seconds = time.monotonic() - started
                if self._raise_on_safety_violation:
                    safety.raise_if_blocked()
                return result

            lock = self._target_locks.setdefault(target.id, asyncio.Lock())
            if lock.locked():
                writer.info(COMPONENT, f"Waiting for the running clone into {target.name}")
            async with lock:
                await self._execute(source, target, options, writer, result)

        result.duration_seconds = time.monotonic() - started
        result.completed_at = datetime.now(UTC)
        logger.info(
            "Clone %s %s in %.2fs: %s",
            operation_id,
            "succeeded" if result.success else "failed",
            result.duration_seconds,
            result.statistics.to_dict(),
        )
        return result

    async def rollback_clone(self, target: Environment, backup_id: str) -> RollbackResult:
        """
        Restore ``target`` from a backup point.

        A missing or corrupt backup yields a WARNING result instead of an error.

        Raises:
            ProductionAccessError: If ``target`` is a production environment.
            BackupError: If an existing backup cannot be restored.
        """
        self._guard.ensure_rollback_allowed(target)
        client = self._client_provider(target)
        try:
            return await self._backup.restore_backup(client, target, backup_id)
        finally:
            await client.close()

    def get_operation_status(self, operation_id: str) -> OperationSnapshot | None:
        """Snapshot of an operation, running or finished; None if unknown."""
        return self._registry.get(operation_id)

    def cancel_operation(self, operation_id: str) -> bool:
        """
        Request cancellation of a running clone.

        The clone stops at its next checkpoint (between phases and tables).
        Returns False for unknown or finished operations.
        """
        requested = self._registry.request_cancel(operation_id)
        if requested:
            logger.info("Cancellation requested for %s", operation_id)
        return requested

    async def _execute(
        self,
        source: Environment,
        target: Environment,
        options: CloneOptions,
        writer: OperationWriter,
        result: CloneResult,
    ) -> None:
        source_client = self._client_provider(source)
        target_client = self._client_provider(target)
        run = _CloneRun(source, target, options, writer, source_client, target_client, result)
        try:
            try:
                async with asyncio.timeout(options.timeout_seconds):
                    await self._run_phases(run)
            except TimeoutError as e:
                raise OperationTimeoutError(
                    f"Clone exceeded its {options.timeout_seconds}s timeout",
                    timeout_seconds=options.timeout_seconds or 0.0,
                    operation_id=run.operation_id,
                ) from e
        except CloneCancelledError:
            result.errors.append("Operation cancelled")
            await self._restore(run)
            writer.cancel()
        except CloneError as e:
            await self._handle_failure(run, e.message)
        except Exception as e:
            logger.exception("Unexpected error in clone %s", run.operation_id)
            await self._handle_failure(run, describe_error(e))
        else:
            await self._release_backup(run)
            result.success = True
            writer.complete()
        finally:
            await source_client.close()
            await target_client.close()

    async def _run_phases(self, run: _CloneRun) -> None:
        await self._schema_phase(run)
        await self._data_phase(run)
        await self._anonymization_phase(run)
        await self._specialized_phase(run)
        await self._validation_phase(run)

    async def _schema_phase(self, run: _CloneRun) -> None:
        self._enter(run, ClonePhase.ANALYZING_SCHEMA, "Phase 1: Schema Analysis and Migration")
        writer = run.writer

        writer.info("SchemaPhase", "Analyzing source schema...")
        source_analysis = await self._step(
            run,
            "analyze_source_schema",
            lambda: SchemaAnalyzer(run.source_client, tracer=self._tracer).analyze_schema(
                self._analysis_options
            ),
        )
        target_analysis = await self._step(
            run,
            "analyze_target_schema",
            lambda: SchemaAnalyzer(run.target_client, tracer=self._tracer).analyze_schema(
                self._analysis_options
            ),
        )
        run.source_schema = source_analysis.schema
        writer.set_progress(10)

        if run.options.create_backup:
            writer.info("BackupPhase", "Creating backup of target environment...")
            point = await self._backup.create_backup(
                run.target_client,
                run.target,
                target_analysis.schema.tables,
                operation_id=run.operation_id,
            )
            run.result.backup_id = point.backup_id
            writer.set_backup_id(point.backup_id)
            writer.info(
                "BackupPhase",
                f"Backup {point.backup_id} created ({point.table_count} tables)",
                backup_id=point.backup_id,
            )

        writer.info("SchemaPhase", "Comparing schemas...")
        diff = self._comparator.compare_schemas(source_analysis.schema, target_analysis.schema)
        writer.set_progress(20)
        self._checkpoint(run)

        script = self._generator.generate_migration_script(diff)
        if script.is_empty:
            writer.info("SchemaPhase", "Target schema already matches source")
        else:
            writer.info(
                "SchemaPhase",
                f"Executing schema migrations ({len(script.operations)} operations, "
                f"risk {script.risk_level.value})...",
            )
            await self._executor.apply(script, run.target_client, operation_id=run.operation_id)
            if run.result.backup_id is not None:
                await self._backup.record_migration(
                    run.target_client, run.result.backup_id, script
                )
        statistics = run.result.statistics
        statistics.schema_changes = len(script.operations)
        statistics.functions_cloned += _created(diff, DifferenceType.FUNCTION)
        statistics.triggers_cloned += _created(diff, DifferenceType.TRIGGER)
        writer.set_progress(30)
        self._publish_statistics(run)

    async def _data_phase(self, run: _CloneRun) -> None:
        self._enter(run, ClonePhase.CLONING_DATA, "Phase 2: Data Cloning")
        options = run.options
        schema = self._require_schema(run)
        owned = self._specialized.owned_tables
        tables = [t for t in schema.tables if t.qualified_name not in owned]
        skipped = len(schema.tables) - len(tables)
        if skipped:
            run.writer.info(
                "DataPhase", f"{skipped} tables left to the specialized systems phase"
            )

        if options.anonymize_data:
            preserved = ROLE_COLUMNS if options.preserve_user_roles else frozenset()
            run.rules = options.anonymization_rules or suggest_rules(
                schema, preserve_columns=preserved
            )
            run.anonymizer = AnonymizationOrchestrator(
                AnonymizationConfig(seed=options.anonymization_seed, preserve_columns=preserved),
                tracer=self._tracer,
            )
            for problem in run.anonymizer.validate_rules(run.rules, schema):
                run.result.warnings.append(problem.message)
                run.writer.warning("DataPhase", problem.message)

        copier = TableCopier(batch_size=options.batch_size, tracer=self._tracer)
        for table in reversed(tables):
            await self._step(
                run,
                f"clear_{table.qualified_name}",
                lambda table=table: copier.delete_rows(run.target_client, table.qualified_name),
            )

        statistics = run.result.statistics
        for position, table in enumerate(tables, start=1):
            self._checkpoint(run)
            name = table.qualified_name
            if run.anonymizer is not None and any(r.matches_table(name) for r in run.rules):
                run.deferred.append(table)
                run.writer.info("DataPhase", f"Deferred {name} to anonymization")
            else:
                copied = await self._step(
                    run,
                    f"copy_{name}",
                    lambda table=table: copier.copy_table(
                        run.source_client, run.target_client, table
                    ),
                )
                statistics.tables_cloned += 1
                statistics.records_cloned += copied.rows_written
                statistics.bytes_cloned += copied.bytes_copied
                run.copied_tables.append(name)
            run.writer.set_progress(30 + (40 * position) // max(len(tables), 1))

        run.writer.info(
            "DataPhase",
            f"Cloned {len(run.copied_tables)} tables, deferred {len(run.deferred)} "
            "for anonymization",
        )
        run.writer.set_progress(70)
        self._publish_statistics(run)

    async def _anonymization_phase(self, run: _CloneRun) -> None:
        self._enter(run, ClonePhase.ANONYMIZING, "Phase 3: Data Anonymization")
        anonymizer = run.anonymizer
        if anonymizer is None:
            run.writer.info("AnonymizationPhase", "Anonymization disabled; phase skipped")
            run.writer.set_progress(85)
            return

        run.writer.info(
            "AnonymizationPhase",
            f"Anonymizing sensitive data with {len(run.rules)} rules...",
        )
        copier = TableCopier(batch_size=run.options.batch_size, tracer=self._tracer)
        statistics = run.result.statistics
        for table in run.deferred:
            self._checkpoint(run)
            name = table.qualified_name
            transforms: list[TableAnonymizer] = []

            async def copy_anonymized(table: TableDefinition = table) -> TableCopyResult:
                transform = TableAnonymizer(anonymizer, table.qualified_name, run.rules)
                transforms.append(transform)
                return await copier.copy_table(
                    run.source_client, run.target_client, table, transform=transform
                )

            copied = await self._step(run, f"anonymize_{name}", copy_anonymized)
            for error in transforms[-1].errors:
                run.result.warnings.append(error.message)
                run.writer.warning("AnonymizationPhase", error.message)
            statistics.tables_cloned += 1
            statistics.records_cloned += copied.rows_written
            statistics.records_anonymized += copied.rows_transformed
            statistics.bytes_cloned += copied.bytes_copied
            run.copied_tables.append(name)
            run.writer.info(
                "AnonymizationPhase",
                f"Wrote {copied.rows_written} rows of {name} "
                f"({copied.rows_transformed} anonymized)",
            )
        run.writer.set_progress(85)
        self._publish_statistics(run)

    async def _specialized_phase(self, run: _CloneRun) -> None:
        self._enter(
            run, ClonePhase.CLONING_SPECIALIZED_SYSTEMS, "Phase 4: Specialized Systems Cloning"
        )
        options = SpecializedCloneOptions.from_clone_options(run.options)
        if not self._specialized.selected(options):
            run.writer.info("SpecializedSystemsPhase", "No specialized systems selected; skipped")
            run.writer.set_progress(95)
            return

        run.writer.info("SpecializedSystemsPhase", "Cloning specialized systems...")
        specialized = await self._specialized.run(
            run.source_client, run.target_client, options, operation_id=run.operation_id
        )
        run.result.specialized_systems_result = specialized
        run.result.retries_performed += specialized.retries_performed
        run.result.warnings.extend(specialized.warnings)
        if not specialized.success:
            raise SpecializedCloneError(
                "specialized",
                "Specialized systems failed: " + "; ".join(specialized.errors),
                operation_id=run.operation_id,
            )

        statistics = run.result.statistics
        statistics.tables_cloned += specialized.tables_cloned
        statistics.records_cloned += specialized.records_cloned
        statistics.records_anonymized += specialized.records_anonymized
        statistics.bytes_cloned += specialized.bytes_cloned
        statistics.functions_cloned += specialized.functions_cloned
        statistics.triggers_cloned += specialized.triggers_cloned
        run.writer.info(
            "SpecializedSystemsPhase",
            f"Cloned {', '.join(specialized.systems_cloned)}",
        )
        run.writer.set_progress(95)
        self._publish_statistics(run)

    async def _validation_phase(self, run: _CloneRun) -> None:
        self._enter(run, ClonePhase.VALIDATING, "Phase 5: Final Validation")
        if not run.options.validate_after_clone:
            run.writer.info("ValidationPhase", "Validation disabled; phase skipped")
            return

        try:
            report = await self._step(
                run,
                "validate_clone",
                lambda: self._validation.compare_clone(
                    run.source_client, run.target_client, tables=run.copied_tables
                ),
            )
        except Exception as e:
            message = f"Validation: could not complete: {describe_error(e)}"
            run.result.warnings.append(message)
            run.writer.warning("ValidationPhase", message)
            return
        run.result.validation_result = report
        for problem in [*report.errors, *report.warnings]:
            run.result.warnings.append(f"Validation: {problem}")
            run.writer.warning("ValidationPhase", problem)
        run.writer.info(
            "ValidationPhase",
            "Validation passed" if report.passed else "Validation reported problems",
        )

    async def _release_backup(self, run: _CloneRun) -> None:
        backup_id = run.result.backup_id
        if backup_id is None:
            return
        if run.options.keep_backup:
            run.writer.info(COMPONENT, f"Keeping backup {backup_id}", backup_id=backup_id)
            return
        try:
            await self._backup.drop_backup(run.target_client, backup_id)
        except Exception as e:
            message = f"Backup {backup_id} could not be dropped: {describe_error(e)}"
            logger.warning("Clone %s: %s", run.operation_id, message)
            run.result.warnings.append(message)
            run.writer.warning(COMPONENT, message)
            return
        run.writer.info(COMPONENT, f"Dropped backup {backup_id}", backup_id=backup_id)

    def _enter(self, run: _CloneRun, phase: ClonePhase, marker: str) -> None:
        self._checkpoint(run)
        run.writer.transition(phase)
        run.writer.info("Workflow", marker, phase=phase.value)
        logger.debug("Clone %s entered %s", run.operation_id, phase.value)

    def _checkpoint(self, run: _CloneRun) -> None:
        if run.writer.cancel_requested:
            raise CloneCancelledError(run.operation_id)

    async def _step(
        self,
        run: _CloneRun,
        description: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one database step with the clone's retry policy."""
        options = run.options
        retries = options.max_retries if options.retry_on_network_error else 0

        async def attempt() -> T:
            return await operation()

        def count_retry(attempt_number: int, error: Exception, delay_ms: float) -> None:
            run.result.retries_performed += 1
            run.writer.warning(
                COMPONENT,
                f"Retrying {description} after error: {describe_error(error)}",
                attempt=attempt_number + 1,
                delay_ms=delay_ms,
            )

        with self._tracer.span(
            "envclone.orchestrator.step",
            {ATTR_OPERATION_ID: run.operation_id, ATTR_PHASE: run.writer.phase.value},
        ):
            return await self._error_handler.execute_with_retry(
                attempt,
                operation_name=description,
                operation_id=run.operation_id,
                retry_config=RetryConfig.for_max_retries(
                    retries, base_delay_ms=self._retry_base_delay_ms
                ),
                on_retry=count_retry,
            )

    async def _handle_failure(self, run: _CloneRun, message: str) -> None:
        run.result.errors.append(message)
        logger.error("Clone %s failed: %s", run.operation_id, message)
        await self._restore(run)
        run.writer.fail(message)

    async def _restore(self, run: _CloneRun) -> None:
        backup_id = run.result.backup_id
        if backup_id is None:
            return
        run.writer.warning(COMPONENT, f"Restoring target from backup {backup_id}")
        try:
            rollback = await self._backup.restore_backup(run.target_client, run.target, backup_id)
        except CloneError as e:
            run.result.errors.append(f"Rollback failed: {e.message}")
            run.writer.error(COMPONENT, f"Rollback failed: {e.message}")
            return
        if rollback.restored:
            run.result.warnings.append(f"Target restored from backup {backup_id}")
            run.writer.info(COMPONENT, f"Target restored from backup {backup_id}")
        else:
            run.result.warnings.extend(rollback.warnings)

    def _require_schema(self, run: _CloneRun) -> SchemaDefinition:
        if run.source_schema is None:
            raise CloneError("Source schema not analyzed", operation_id=run.operation_id)
        return run.source_schema

    def _publish_statistics(self, run: _CloneRun) -> None:
        if self._events is not None:
            self._events.update_dashboard_data(
                run.operation_id, "statistics", run.result.statistics.to_dict()
            )
            self._events.update_dashboard_data(
                run.operation_id,
                "progress",
                {"progress": run.writer.progress, "phase": run.writer.phase.value},
            )


def _created(diff: SchemaDiff, kind: DifferenceType) -> int:
    return sum(
        1
        for d in diff.of_type(kind)
        if d.action in (DifferenceAction.CREATE, DifferenceAction.ALTER)
    )
