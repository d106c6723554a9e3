"""
Shared contract of the specialized system cloners.

A specialized system (audit, conversations, reservations, bill notifications,
transaction references) owns a fixed set of tables whose rows need
subsystem-specific filtering and anonymization. Each cloner:

1. Makes sure its tables, indexes and functions exist in the target.
2. Copies its tables page by page, anonymizing on the way.
3. Records what it wrote so an aggregate rollback can remove it again.

Every database step goes through the ErrorHandler, so transient NetworkErrors
are retried according to the options and counted in ``retries_performed``.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import ClassVar, Generic, TypeVar

from envclone.anonymization import AnonymizationConfig, AnonymizationOrchestrator
from envclone.copying import BatchTransform, RowFilter, TableCopier
from envclone.database import ClientProvider, DatabaseClient
from envclone.exceptions import (
    CloneError,
    CriticalError,
    ErrorHandler,
    ProductionAccessError,
    RetryConfig,
    describe_error,
)
from envclone.models import CloneOptions, Environment
from envclone.observability import (
    ATTR_OPERATION_ID,
    ATTR_SYSTEM_NAME,
    Tracer,
    create_tracer,
)
from envclone.safety import ProductionSafetyGuard
from envclone.schema.migration import MigrationOptions, create_index_sql, create_table_sql
from envclone.schema.models import ColumnDefinition, IndexDefinition, TableDefinition

logger = logging.getLogger(__name__)

T = TypeVar("T")

MESSAGE_TYPES = ("text", "image", "file", "system")

EXISTING_TABLES_QUERY = """
SELECT table_name
FROM information_schema.tables
WHERE table_schema = :schema AND table_name = ANY(:tables)
"""

# Target DDL is idempotent so a retried or repeated clone can run it again
DDL_OPTIONS = MigrationOptions(add_comments=False, safe_mode=True)


def columns(*specs: tuple) -> tuple[ColumnDefinition, ...]:
    """
    Build column definitions from ``(name, type[, nullable[, default]])`` tuples.

    Example:
        >>> columns(("id", "uuid", False, "gen_random_uuid()"), ("note", "text"))
    """
    built: list[ColumnDefinition] = []
    for position, spec in enumerate(specs, start=1):
        name, data_type, *rest = spec
        nullable = rest[0] if rest else True
        default = rest[1] if len(rest) > 1 else None
        built.append(ColumnDefinition(name, data_type, nullable, default, position))
    return tuple(built)


@dataclass(frozen=True)
class SpecializedCloneOptions:
    """
    Options shared by the specialized system cloners.

    Attributes:
        include_audit: Clone the audit system.
        include_conversations: Clone conversations.
        include_reservations: Clone reservations.
        include_bill_notifications: Clone recurring bills and their notifications.
        include_transaction_references: Clone transaction reference amounts
            and alerts.
        anonymize_audit_data: Scrub personal data from audit logs.
        include_messages: Copy messages (conversations and participants are
            always copied when conversations are included).
        anonymize_message_content: Scrub message content.
        message_type_filter: Message types to copy.
        anonymize_guest_data: Replace guest name, email and phone.
        anonymize_pricing_data: Perturb prices and payment amounts.
        anonymize_bill_data: Replace bill descriptions and scrub notes and
            alert messages.
        max_log_age_days: Only copy audit logs newer than this.
        max_message_age_days: Only copy messages newer than this.
        max_reservation_age_days: Only copy reservations newer than this.
        rollback_on_critical_error: Remove everything cloned when a system
            fails critically (its tables, indexes, functions or triggers
            could not be created).
        retry_on_network_error: Retry transient network failures.
        max_retries: Retries per step.
        batch_size: Rows per page.
        anonymization_seed: Seed for reproducible synthetic values.
    """

    include_audit: bool = True
    include_conversations: bool = True
    include_reservations: bool = True
    include_bill_notifications: bool = True
    include_transaction_references: bool = True
    anonymize_audit_data: bool = True
    include_messages: bool = True
    anonymize_message_content: bool = True
    message_type_filter: tuple[str, ...] = MESSAGE_TYPES
    anonymize_guest_data: bool = True
    anonymize_pricing_data: bool = False
    anonymize_bill_data: bool = True
    max_log_age_days: int | None = None
    max_message_age_days: int | None = None
    max_reservation_age_days: int | None = None
    rollback_on_critical_error: bool = False
    retry_on_network_error: bool = True
    max_retries: int = 3
    batch_size: int = 500
    anonymization_seed: int | None = None

    def __post_init__(self) -> None:
        if not self.message_type_filter:
            raise ValueError("message_type_filter must not be empty")
        unknown = set(self.message_type_filter) - set(MESSAGE_TYPES)
        if unknown:
            raise ValueError(f"unknown message types: {', '.join(sorted(unknown))}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        for name in ("max_log_age_days", "max_message_age_days", "max_reservation_age_days"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")

    @classmethod
    def default(cls) -> SpecializedCloneOptions:
        return cls()

    @classmethod
    def training(cls) -> SpecializedCloneOptions:
        """Realistic but recent data for training environments."""
        return cls(
            max_log_age_days=90,
            max_message_age_days=30,
            max_reservation_age_days=365,
            anonymize_pricing_data=False,
            rollback_on_critical_error=True,
        )

    @classmethod
    def test(cls) -> SpecializedCloneOptions:
        """Small, fully anonymized data set for test environments."""
        return cls(
            max_log_age_days=30,
            max_message_age_days=7,
            max_reservation_age_days=90,
            anonymize_pricing_data=True,
            message_type_filter=("text", "system"),
            rollback_on_critical_error=True,
        )

    @classmethod
    def from_clone_options(cls, options: CloneOptions) -> SpecializedCloneOptions:
        """Derive specialized options from the options of a whole clone."""
        anonymize = options.anonymize_data
        return cls(
            include_audit=options.include_audit_logs,
            include_conversations=options.include_conversations,
            include_reservations=options.include_reservations,
            include_bill_notifications=options.include_bill_notifications,
            include_transaction_references=options.include_transaction_references,
            anonymize_audit_data=anonymize,
            anonymize_message_content=anonymize,
            anonymize_guest_data=anonymize,
            anonymize_bill_data=anonymize,
            anonymize_pricing_data=False,
            max_log_age_days=options.max_log_age_days,
            max_message_age_days=options.max_message_age_days,
            max_reservation_age_days=options.max_reservation_age_days,
            retry_on_network_error=options.retry_on_network_error,
            max_retries=options.max_retries,
            batch_size=options.batch_size,
            anonymization_seed=options.anonymization_seed,
        )


@dataclass
class SystemCloneResult:
    """
    Result of cloning one specialized system.

    Attributes:
        system: System name.
        success: True when the system was cloned without errors.
        tables_cloned: Tables whose rows were written.
        records_cloned: Rows written across all tables.
        records_anonymized: Rows changed by anonymization.
        bytes_cloned: Approximate size of the written rows.
        errors: Error messages; non-empty means the system failed.
        warnings: Non-fatal findings.
        retries_performed: Transient failures retried.
        written_tables: Qualified names written, in write order.
        critical: The failure left the system's target structure incomplete.
        duration_seconds: Wall time.
    """

    system: str
    success: bool = False
    tables_cloned: int = 0
    records_cloned: int = 0
    records_anonymized: int = 0
    bytes_cloned: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    retries_performed: int = 0
    written_tables: list[str] = field(default_factory=list)
    critical: bool = False
    duration_seconds: float = 0.0


R = TypeVar("R", bound=SystemCloneResult)


class SpecializedSystemCloner(ABC, Generic[R]):
    """
    Base class for specialized system cloners.

    Subclasses declare ``name``, ``tables`` and ``indexes`` and implement
    ``_new_result`` and ``_clone``.

    Args:
        client_provider: Resolves environments to database clients.
        anonymizer: Anonymization orchestrator; built from the options' seed
            when omitted.
        guard: Safety guard checked before writing to the target.
        error_handler: Retry machinery for transient errors.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
        retry_base_delay_ms: Base backoff between retries.
    """

    name: ClassVar[str]
    tables: ClassVar[tuple[TableDefinition, ...]]
    indexes: ClassVar[tuple[IndexDefinition, ...]] = ()

    def __init__(
        self,
        client_provider: ClientProvider | None = None,
        *,
        anonymizer: AnonymizationOrchestrator | None = None,
        guard: ProductionSafetyGuard | None = None,
        error_handler: ErrorHandler | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        retry_base_delay_ms: float = 100.0,
    ) -> None:
        self._client_provider = client_provider
        self._anonymizer = anonymizer
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._guard = guard or ProductionSafetyGuard(tracer=self._tracer)
        self._error_handler = error_handler or ErrorHandler()
        self._retry_base_delay_ms = retry_base_delay_ms

    @property
    def table_names(self) -> tuple[str, ...]:
        return tuple(table.qualified_name for table in self.tables)

    async def clone(
        self,
        source: Environment,
        target: Environment,
        options: SpecializedCloneOptions | None = None,
        *,
        operation_id: str | None = None,
    ) -> R:
        """
        Clone this system from ``source`` into ``target``.

        Clients are obtained from the client provider and closed afterwards.

        Raises:
            ProductionAccessError: If ``target`` is a production environment.
        """
        if self._client_provider is None:
            raise ValueError(f"{type(self).__name__} needs a client_provider to clone environments")
        self._guard.validate_environment_access(target, "write")
        source_client = self._client_provider(source)
        target_client = self._client_provider(target)
        try:
            return await self.run(source_client, target_client, options, operation_id=operation_id)
        finally:
            await source_client.close()
            await target_client.close()

    async def run(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        options: SpecializedCloneOptions | None = None,
        *,
        operation_id: str | None = None,
    ) -> R:
        """
        Clone this system between two open clients.

        Failures are recorded in the result rather than raised, so one
        system failing does not abort its siblings. A CriticalError also
        marks the result ``critical``. Only safety violations propagate.
        """
        options = options or SpecializedCloneOptions.default()
        result = self._new_result()
        started = time.monotonic()

        with self._tracer.span(
            f"envclone.specialized.{self.name}.clone",
            {ATTR_SYSTEM_NAME: self.name, ATTR_OPERATION_ID: operation_id or ""},
        ):
            logger.info("Cloning %s system [operation=%s]", self.name, operation_id or "-")
            try:
                await self._clone(source, target, options, result, operation_id)
            except ProductionAccessError:
                raise
            except CriticalError as e:
                result.critical = True
                result.errors.append(f"{self.name} system clone failed: {e.message}")
            except CloneError as e:
                result.errors.append(f"{self.name} system clone failed: {e.message}")
            except Exception as e:
                logger.exception("Unexpected failure cloning %s system", self.name)
                result.errors.append(f"{self.name} system clone failed: {describe_error(e)}")

        result.success = not result.errors
        result.duration_seconds = time.monotonic() - started
        if result.success:
            logger.info(
                "%s system cloned: %d tables, %d records (%d anonymized)",
                self.name,
                result.tables_cloned,
                result.records_cloned,
                result.records_anonymized,
            )
        else:
            for error in result.errors:
                logger.error("%s", error)
        return result

    async def remove_cloned(self, target: DatabaseClient, result: SystemCloneResult) -> list[str]:
        """
        Delete every row this system wrote, dependents first.

        Returns:
            Qualified names of the tables emptied.
        """
        removed: list[str] = []
        for table_name in reversed(result.written_tables):
            await target.execute(f"DELETE FROM {table_name}")
            removed.append(table_name)
        logger.warning("Removed cloned %s data from %d tables", self.name, len(removed))
        return removed

    @abstractmethod
    def _new_result(self) -> R: ...

    @abstractmethod
    async def _clone(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: R,
        operation_id: str | None,
    ) -> None:
        """Clone the system, filling ``result``. Raise on failure."""

    # -------------------------------------------------------------------------
    # Helpers for subclasses
    # -------------------------------------------------------------------------

    def _anonymizer_for(self, options: SpecializedCloneOptions) -> AnonymizationOrchestrator:
        """
        Anonymizer of one clone: the injected one, or a new one seeded from
        ``options``. Never stored, so clones share no generator state.
        """
        if self._anonymizer is not None:
            return self._anonymizer
        return AnonymizationOrchestrator(
            AnonymizationConfig(seed=options.anonymization_seed),
            tracer=self._tracer,
        )

    async def _step(
        self,
        description: str,
        operation: Callable[[], Awaitable[T]],
        options: SpecializedCloneOptions,
        result: SystemCloneResult,
        operation_id: str | None,
    ) -> T:
        """Run one database step with retries for transient failures."""

        def count_retry(attempt: int, error: Exception, delay_ms: float) -> None:
            result.retries_performed += 1

        async def call() -> T:
            return await operation()

        return await self._error_handler.execute_with_retry(
            call,
            operation_name=f"{self.name}: {description}",
            operation_id=operation_id,
            retry_config=RetryConfig.for_max_retries(
                options.max_retries if options.retry_on_network_error else 0,
                base_delay_ms=self._retry_base_delay_ms,
            ),
            on_retry=count_retry,
        )

    async def _structure_step(
        self,
        description: str,
        operation: Callable[[], Awaitable[T]],
        options: SpecializedCloneOptions,
        result: SystemCloneResult,
        operation_id: str | None,
    ) -> T:
        """Run a step creating target structure; a final failure is critical."""
        try:
            return await self._step(description, operation, options, result, operation_id)
        except ProductionAccessError:
            raise
        except Exception as e:
            raise CriticalError(
                f"Could not {description}: {describe_error(e)}", operation_id=operation_id
            ) from e

    async def _prepare_target(
        self,
        target: DatabaseClient,
        options: SpecializedCloneOptions,
        result: SystemCloneResult,
        operation_id: str | None,
    ) -> None:
        """
        Create the system's schemas, tables and indexes if missing, then
        empty its tables, dependents first.

        The system owns these tables, so rows the filters leave out must not
        survive from an earlier clone.
        """
        for schema in dict.fromkeys(table.schema for table in self.tables):
            if schema != "public":
                await self._structure_step(
                    f"create schema {schema}",
                    lambda s=schema: target.execute(f"CREATE SCHEMA IF NOT EXISTS {s};"),
                    options,
                    result,
                    operation_id,
                )
        for table in self.tables:
            await self._structure_step(
                f"create table {table.qualified_name}",
                lambda t=table: target.execute(create_table_sql(t, DDL_OPTIONS)),
                options,
                result,
                operation_id,
            )
        for index in self.indexes:
            await self._structure_step(
                f"create index {index.name}",
                lambda i=index: target.execute(create_index_sql(i, DDL_OPTIONS)),
                options,
                result,
                operation_id,
            )
        for table in reversed(self.tables):
            await self._step(
                f"clear {table.qualified_name}",
                lambda t=table: target.execute(f"DELETE FROM {t.qualified_name}"),
                options,
                result,
                operation_id,
            )

    async def _copy(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        table: TableDefinition,
        options: SpecializedCloneOptions,
        result: SystemCloneResult,
        operation_id: str | None,
        *,
        filters: tuple[RowFilter, ...] = (),
        transform: BatchTransform | None = None,
    ) -> int:
        """
        Copy one table of the system and account for it in ``result``.

        Target rows matching ``filters`` are deleted at the start of every
        attempt, so a retried copy starts from an empty table.

        Returns:
            Rows written.
        """
        copier = TableCopier(batch_size=options.batch_size, tracer=self._tracer)
        copied = await self._step(
            f"copy {table.qualified_name}",
            lambda: copier.copy_table(
                source, target, table, filters=filters, transform=transform
            ),
            options,
            result,
            operation_id,
        )
        if table.qualified_name not in result.written_tables:
            result.written_tables.append(table.qualified_name)
        result.tables_cloned += 1
        result.records_cloned += copied.rows_written
        result.records_anonymized += copied.rows_transformed
        result.bytes_cloned += copied.bytes_copied
        logger.debug(
            "%s: copied %d rows of %s", self.name, copied.rows_written, table.qualified_name
        )
        return copied.rows_written

    async def _existing_tables(
        self,
        client: DatabaseClient,
        schema: str,
        names: tuple[str, ...],
    ) -> set[str]:
        rows = await client.execute(
            EXISTING_TABLES_QUERY, {"schema": schema, "tables": list(names)}
        )
        return {row["table_name"] for row in rows}
