"""
Validation and health checks for environments and clones.

``ValidationEngine.validate_environment`` scores the health of one
environment: connectivity, schema completeness, data integrity and the audit
system. ``ValidationEngine.validate_clone`` checks that a clone reproduced
its source: identical schemas, matching row counts and working critical
functions.

All checks are read-only; the safety guard's read access check runs before
any of them.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from envclone.copying import RowFilter, TableCopier
from envclone.database import ClientProvider, DatabaseClient
from envclone.exceptions import CloneError, NetworkError, describe_error
from envclone.models import Environment
from envclone.observability import (
    ATTR_DIFFERENCE_COUNT,
    ATTR_SOURCE_ENVIRONMENT,
    ATTR_TARGET_ENVIRONMENT,
    Tracer,
    create_tracer,
)
from envclone.safety import ProductionSafetyGuard
from envclone.schema import (
    ComparisonOptions,
    SchemaAnalysisOptions,
    SchemaAnalyzer,
    SchemaComparator,
    SchemaDefinition,
)

logger = logging.getLogger(__name__)

EXPECTED_TABLES: tuple[str, ...] = (
    # Core tables
    "users",
    "profiles",
    "teams",
    "team_members",
    "lofts",
    "loft_photos",
    "owners",
    "reservations",
    "availability_calendar",
    "transactions",
    "transaction_reference_amounts",
    "tasks",
    "task_assignments",
    "notifications",
    "notification_preferences",
    "conversations",
    "conversation_participants",
    "messages",
    # Audit tables
    "audit_logs",
    "audit_user_context",
    # System tables
    "payment_methods",
    "currencies",
    "zone_areas",
)

COUNTED_TABLES: tuple[str, ...] = (
    "public.users",
    "public.lofts",
    "public.reservations",
    "public.transactions",
    "public.tasks",
)

AUDIT_LOGS_TABLE = "audit.audit_logs"
DUPLICATE_EMAILS_FUNCTION = "find_duplicate_emails"
FAST_RESPONSE_MS = 500.0
ACCEPTABLE_RESPONSE_MS = 1000.0
CONNECTION_FAILED = "Database connection failed"


@dataclass(frozen=True)
class ForeignKeyCheck:
    """Rows of ``table`` whose ``column`` points at no row of ``referenced_table``."""

    table: str
    column: str
    referenced_table: str
    referenced_column: str = "id"

    def sql(self) -> str:
        return (
            f"SELECT COUNT(*) AS count FROM {self.table} t "
            f"WHERE t.{self.column} IS NOT NULL AND NOT EXISTS ("
            f"SELECT 1 FROM {self.referenced_table} r "
            f"WHERE r.{self.referenced_column} = t.{self.column})"
        )


@dataclass(frozen=True)
class NotNullCheck:
    """Rows of ``table`` with a NULL in a column that must always be set."""

    table: str
    column: str

    def sql(self) -> str:
        return f"SELECT COUNT(*) AS count FROM {self.table} WHERE {self.column} IS NULL"


@dataclass(frozen=True)
class ValidationConfig:
    """
    What the validation engine checks.

    Attributes:
        expected_tables: Table names (unqualified) a complete environment has.
        counted_tables: Tables whose rows are totalled.
        foreign_key_checks: Relationships checked for orphaned rows.
        not_null_checks: Critical columns checked for NULLs.
        critical_functions: Stored functions invoked by ``validate_clone``.
        analysis_options: Schema analysis options for both checks.
        comparison_options: Options for the clone schema comparison.
    """

    expected_tables: tuple[str, ...] = EXPECTED_TABLES
    counted_tables: tuple[str, ...] = COUNTED_TABLES
    foreign_key_checks: tuple[ForeignKeyCheck, ...] = (
        ForeignKeyCheck("public.reservations", "loft_id", "public.lofts"),
    )
    not_null_checks: tuple[NotNullCheck, ...] = (
        NotNullCheck("public.users", "email"),
        NotNullCheck("public.lofts", "name"),
        NotNullCheck("public.reservations", "loft_id"),
        NotNullCheck("public.transactions", "amount"),
    )
    critical_functions: tuple[str, ...] = ()
    analysis_options: SchemaAnalysisOptions = field(default_factory=SchemaAnalysisOptions)
    comparison_options: ComparisonOptions = field(default_factory=ComparisonOptions)


@dataclass
class ConnectivityResult:
    connected: bool
    response_time_ms: float
    version: str | None = None
    error: str | None = None


@dataclass
class SchemaCheckResult:
    """Schema completeness of an environment."""

    is_valid: bool
    tables_found: int = 0
    expected_found: int = 0
    missing_tables: list[str] = field(default_factory=list)
    extra_tables: list[str] = field(default_factory=list)
    functions_found: int = 0
    triggers_found: int = 0
    policies_found: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class IntegrityResult:
    """Data integrity of an environment."""

    is_valid: bool
    total_records: int = 0
    orphaned_records: int = 0
    duplicate_records: int = 0
    null_constraint_violations: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class AuditCheckResult:
    """Presence and activity of the audit system."""

    is_valid: bool
    audit_tables_present: bool = False
    audit_triggers_active: bool = False
    audit_functions_present: bool = False
    audit_logs_recent: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    """
    Health report of one environment.

    Attributes:
        environment_id: Environment checked.
        is_valid: All four checks passed.
        overall_score: Health score 0-100.
    """

    environment_id: str
    is_valid: bool
    connectivity: ConnectivityResult
    schema: SchemaCheckResult
    data_integrity: IntegrityResult
    audit_system: AuditCheckResult
    overall_score: int
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class CloneValidationReport:
    """
    Result of checking a target against the source it was cloned from.

    Attributes:
        passed: No errors were found.
        schema_differences: Number of remaining schema differences.
        differences: Short description of each remaining difference.
        row_counts: ``table -> (source rows, target rows)`` of compared tables.
        functions_checked: Critical functions invoked successfully.
        errors: Failed checks.
        warnings: Checks that could not run.
    """

    passed: bool = True
    schema_differences: int = 0
    differences: list[str] = field(default_factory=list)
    row_counts: dict[str, tuple[int, int]] = field(default_factory=dict)
    functions_checked: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def mismatched_tables(self) -> list[str]:
        return [name for name, (src, tgt) in self.row_counts.items() if src != tgt]


def overall_score(
    connectivity: ConnectivityResult,
    schema: SchemaCheckResult,
    integrity: IntegrityResult,
    audit: AuditCheckResult,
    expected_tables: int,
) -> int:
    """
    Health score 0-100.

    Connectivity 25 (plus 5 under a second and 5 more under half a second),
    schema 30, integrity 25 and audit 20, each with partial credit.
    """
    score = 0
    if connectivity.connected:
        score += 25
        if connectivity.response_time_ms < ACCEPTABLE_RESPONSE_MS:
            score += 5
        if connectivity.response_time_ms < FAST_RESPONSE_MS:
            score += 5

    if schema.is_valid:
        score += 30
    elif expected_tables:
        score += math.floor(schema.expected_found / expected_tables * 30)

    if integrity.is_valid:
        score += 25
    else:
        if integrity.orphaned_records == 0:
            score += 8
        if integrity.null_constraint_violations == 0:
            score += 8
        if integrity.duplicate_records == 0:
            score += 9

    if audit.is_valid:
        score += 20
    else:
        if audit.audit_tables_present:
            score += 7
        if audit.audit_triggers_active:
            score += 7
        if audit.audit_functions_present:
            score += 6

    return min(100, max(0, score))


class ValidationEngine:
    """
    Environment health checks and clone verification.

    Example:
        >>> engine = ValidationEngine(client_provider)
        >>> report = await engine.validate_environment(training)
        >>> report.overall_score
        100
    """

    def __init__(
        self,
        client_provider: ClientProvider | None = None,
        *,
        config: ValidationConfig | None = None,
        guard: ProductionSafetyGuard | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._client_provider = client_provider
        self._config = config or ValidationConfig()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._guard = guard or ProductionSafetyGuard(tracer=self._tracer)
        self._copier = TableCopier(tracer=self._tracer)

    @property
    def config(self) -> ValidationConfig:
        return self._config

    async def validate_environment(self, environment: Environment) -> ValidationReport:
        """
        Score the health of one environment.

        Raises:
            ProductionAccessError: If the environment may not even be read.
        """
        self._guard.validate_environment_access(environment, "validation")
        client = self._open(environment)
        try:
            return await self.inspect(client, environment_id=environment.id)
        finally:
            await client.close()

    async def validate_clone(
        self,
        source: Environment,
        target: Environment,
        *,
        tables: Sequence[str] | None = None,
        critical_functions: Sequence[str] | None = None,
    ) -> CloneValidationReport:
        """Verify that ``target`` reproduces ``source``."""
        self._guard.validate_environment_access(source, "validation")
        self._guard.validate_environment_access(target, "validation")
        source_client = self._open(source)
        target_client = self._open(target)
        try:
            with self._tracer.span(
                "envclone.validation.validate_clone",
                {ATTR_SOURCE_ENVIRONMENT: source.id, ATTR_TARGET_ENVIRONMENT: target.id},
            ):
                return await self.compare_clone(
                    source_client,
                    target_client,
                    tables=tables,
                    critical_functions=critical_functions,
                )
        finally:
            await source_client.close()
            await target_client.close()

    async def inspect(
        self, client: DatabaseClient, *, environment_id: str = ""
    ) -> ValidationReport:
        """Run the health checks on an open client."""
        started = time.perf_counter()
        with self._tracer.span(
            "envclone.validation.validate_environment",
            {ATTR_TARGET_ENVIRONMENT: environment_id},
        ):
            connectivity = await self.check_connectivity(client)
            if connectivity.connected:
                schema_definition, schema = await self._check_schema(client)
                integrity = await self._check_integrity(client, schema_definition)
                audit = await self._check_audit(client, schema_definition)
            else:
                failed = [CONNECTION_FAILED]
                schema = SchemaCheckResult(
                    is_valid=False,
                    missing_tables=list(self._config.expected_tables),
                    errors=list(failed),
                )
                integrity = IntegrityResult(is_valid=False, errors=list(failed))
                audit = AuditCheckResult(is_valid=False, errors=list(failed))

        score = overall_score(
            connectivity, schema, integrity, audit, len(self._config.expected_tables)
        )
        report = ValidationReport(
            environment_id=environment_id,
            is_valid=(
                connectivity.connected
                and schema.is_valid
                and integrity.is_valid
                and audit.is_valid
            ),
            connectivity=connectivity,
            schema=schema,
            data_integrity=integrity,
            audit_system=audit,
            overall_score=score,
            duration_seconds=time.perf_counter() - started,
        )
        logger.info(
            "Validated environment %s: score %d, valid=%s",
            environment_id or "-",
            score,
            report.is_valid,
        )
        return report

    async def check_connectivity(self, client: DatabaseClient) -> ConnectivityResult:
        started = time.perf_counter()
        try:
            rows = await client.execute("SELECT version() AS version")
        except Exception as e:
            logger.warning("Connectivity check failed: %s", describe_error(e))
            return ConnectivityResult(
                connected=False,
                response_time_ms=(time.perf_counter() - started) * 1000,
                error=describe_error(e),
            )
        version = str(rows[0]["version"]) if rows and rows[0].get("version") else None
        return ConnectivityResult(
            connected=True,
            response_time_ms=(time.perf_counter() - started) * 1000,
            version=version,
        )

    async def compare_clone(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        *,
        tables: Sequence[str] | None = None,
        critical_functions: Sequence[str] | None = None,
    ) -> CloneValidationReport:
        """
        Verify a clone on open clients.

        Args:
            source: Source database.
            target: Target database.
            tables: Qualified tables whose row counts must match; all source
                tables when None.
            critical_functions: Functions to invoke on the target; the
                configured ones when None.
        """
        started = time.perf_counter()
        with self._tracer.span("envclone.validation.compare_clone", {}) as span:
            report = await self._compare(source, target, tables, critical_functions)
            if span is not None:
                span.set_attribute(ATTR_DIFFERENCE_COUNT, report.schema_differences)
        report.duration_seconds = time.perf_counter() - started
        logger.info(
            "Clone validation %s: %d schema differences, %d tables compared, %d errors",
            "passed" if report.passed else "failed",
            report.schema_differences,
            len(report.row_counts),
            len(report.errors),
        )
        return report

    async def _compare(
        self,
        source: DatabaseClient,
        target: DatabaseClient,
        tables: Sequence[str] | None,
        critical_functions: Sequence[str] | None,
    ) -> CloneValidationReport:
        report = CloneValidationReport()
        analysis = self._config.analysis_options
        try:
            source_schema = (
                await SchemaAnalyzer(source, tracer=self._tracer).analyze_schema(analysis)
            ).schema
            target_schema = (
                await SchemaAnalyzer(target, tracer=self._tracer).analyze_schema(analysis)
            ).schema
        except CloneError as e:
            report.errors.append(f"Schema validation failed: {e.message}")
        else:
            diff = SchemaComparator(tracer=self._tracer).compare_schemas(
                source_schema, target_schema, self._config.comparison_options
            )
            report.schema_differences = len(diff.differences)
            report.differences = [
                f"{d.action.value} {d.type.value} {d.qualified_name}" for d in diff.differences
            ]
            if diff.differences:
                report.errors.append(
                    f"Schema mismatch: {len(diff.differences)} differences remain "
                    f"({', '.join(report.differences[:5])})"
                )
            if tables is None:
                tables = [t.qualified_name for t in source_schema.tables]

        for name in tables or ():
            try:
                counts = (
                    await self._copier.count_rows(source, name),
                    await self._copier.count_rows(target, name),
                )
            except NetworkError:
                raise
            except Exception as e:
                report.warnings.append(f"Could not count rows of {name}: {describe_error(e)}")
                continue
            report.row_counts[name] = counts
            if counts[0] != counts[1]:
                report.errors.append(
                    f"Row count mismatch for {name}: source {counts[0]}, target {counts[1]}"
                )

        functions = (
            self._config.critical_functions if critical_functions is None else critical_functions
        )
        for function in functions:
            try:
                await target.call_function(function)
            except NetworkError:
                raise
            except Exception as e:
                report.errors.append(f"Critical function {function} failed: {describe_error(e)}")
            else:
                report.functions_checked.append(function)

        report.passed = not report.errors
        return report

    async def _check_schema(
        self,
        client: DatabaseClient,
    ) -> tuple[SchemaDefinition | None, SchemaCheckResult]:
        expected = self._config.expected_tables
        try:
            analysis = await SchemaAnalyzer(client, tracer=self._tracer).analyze_schema(
                self._config.analysis_options
            )
        except CloneError as e:
            return None, SchemaCheckResult(
                is_valid=False,
                missing_tables=list(expected),
                errors=[f"Failed to query schema: {e.message}"],
            )

        schema = analysis.schema
        found = {table.name for table in schema.tables}
        missing = [name for name in expected if name not in found]
        errors = [f"Missing tables: {', '.join(missing)}"] if missing else []
        return schema, SchemaCheckResult(
            is_valid=not missing,
            tables_found=len(schema.tables),
            expected_found=len(expected) - len(missing),
            missing_tables=missing,
            extra_tables=sorted(found - set(expected)),
            functions_found=len(schema.functions),
            triggers_found=len(schema.triggers),
            policies_found=len(schema.policies),
            errors=errors,
        )

    async def _check_integrity(
        self,
        client: DatabaseClient,
        schema: SchemaDefinition | None,
    ) -> IntegrityResult:
        result = IntegrityResult(is_valid=False)
        if schema is None:
            result.errors.append("Schema unavailable; integrity not checked")
            return result

        for name in self._config.counted_tables:
            if not schema.has_table(name):
                continue
            try:
                result.total_records += await self._copier.count_rows(client, name)
            except Exception as e:
                result.warnings.append(f"Could not count records in {name}: {describe_error(e)}")

        for check in self._config.foreign_key_checks:
            if not (schema.has_table(check.table) and schema.has_table(check.referenced_table)):
                result.warnings.append(
                    f"Skipped orphan check of {check.table}.{check.column}: table missing"
                )
                continue
            try:
                result.orphaned_records += await self._count(client, check.sql())
            except Exception as e:
                result.warnings.append(
                    f"Could not check orphaned rows of {check.table}: {describe_error(e)}"
                )

        try:
            duplicates = await client.call_function(DUPLICATE_EMAILS_FUNCTION)
        except Exception:
            result.warnings.append("Duplicate email check function not available")
        else:
            result.duplicate_records = len(duplicates) if isinstance(duplicates, list) else 0

        for null_check in self._config.not_null_checks:
            if not schema.has_table(null_check.table):
                continue
            try:
                result.null_constraint_violations += await self._count(client, null_check.sql())
            except Exception as e:
                result.warnings.append(
                    f"Could not check null values in {null_check.table}.{null_check.column}: "
                    f"{describe_error(e)}"
                )

        result.is_valid = (
            not result.errors
            and result.orphaned_records == 0
            and result.null_constraint_violations == 0
        )
        return result

    async def _check_audit(
        self,
        client: DatabaseClient,
        schema: SchemaDefinition | None,
    ) -> AuditCheckResult:
        result = AuditCheckResult(is_valid=False)
        if schema is None:
            result.errors.append("Schema unavailable; audit system not checked")
            return result

        result.audit_tables_present = any(t.name.startswith("audit") for t in schema.tables)
        result.audit_triggers_active = any("audit" in t.name for t in schema.triggers)
        result.audit_functions_present = any("audit" in f.name for f in schema.functions)
        if not result.audit_tables_present:
            result.errors.append("Audit tables not found")
        if not result.audit_triggers_active:
            result.errors.append("Audit triggers not found or inactive")
        if not result.audit_functions_present:
            result.errors.append("Audit functions not found")

        if schema.has_table(AUDIT_LOGS_TABLE):
            try:
                recent = await self._copier.count_rows(
                    client, AUDIT_LOGS_TABLE, [RowFilter.newer_than("timestamp", 1)]
                )
            except Exception:
                result.errors.append("Could not check recent audit logs")
            else:
                result.audit_logs_recent = recent > 0

        result.is_valid = (
            result.audit_tables_present
            and result.audit_triggers_active
            and result.audit_functions_present
        )
        return result

    @staticmethod
    async def _count(client: DatabaseClient, sql: str) -> int:
        rows = await client.execute(sql)
        return int(rows[0]["count"]) if rows else 0

    def _open(self, environment: Environment) -> DatabaseClient:
        if self._client_provider is None:
            raise ValueError("ValidationEngine needs a client_provider to open environments")
        return self._client_provider(environment)
