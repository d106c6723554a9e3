"""
envclone - Production-safe cloning of database environments.

This library provides:
- A production safety guard refusing writes to production environments
- Schema analysis, dependency-ordered diffing and migration generation
- Table copying with deterministic, format-preserving anonymization
- Specialized cloners for the audit, conversations and reservations systems
- Backup points with rollback, post-clone validation and health scoring
- An operation registry and in-process event channel for monitoring
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("envclone")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from envclone.anonymization import (
    AnonymizationConfig,
    AnonymizationOrchestrator,
    AnonymizationOutcome,
    suggest_rules,
)
from envclone.backup import BackupManager, BackupPoint
from envclone.copying import RowFilter, TableCopier, TableCopyResult
from envclone.database import (
    ClientProvider,
    DatabaseClient,
    Row,
    SQLAlchemyDatabaseClient,
    sqlalchemy_client_provider,
)
from envclone.events import CloneEvent, Dashboard, DashboardData, EventChannel, EventType
from envclone.exceptions import (
    AnonymizationError,
    BackupError,
    CloneError,
    CriticalError,
    EnvironmentValidationError,
    ErrorHandler,
    InvalidPhaseTransitionError,
    MigrationExecutionError,
    MigrationGenerationError,
    NetworkError,
    OperationNotFoundError,
    OperationTimeoutError,
    ProductionAccessError,
    RetryConfig,
    SchemaAnalysisError,
    SchemaDiffError,
    SpecializedCloneError,
)
from envclone.models import (
    AnonymizationRule,
    AnonymizationType,
    ClonePhase,
    CloneOptions,
    CloneResult,
    CloneStatistics,
    Environment,
    EnvironmentStatus,
    EnvironmentType,
    LogEntry,
    LogLevel,
    OperationStatus,
    RollbackResult,
    RollbackStatus,
    format_bytes,
)
from envclone.operations import OperationRegistry, OperationSnapshot, OperationWriter
from envclone.orchestrator import CloneCancelledError, EnvironmentCloner
from envclone.safety import ProductionSafetyGuard, SafetyValidationResult
from envclone.schema import (
    MigrationExecutor,
    MigrationGenerator,
    MigrationScript,
    SchemaAnalyzer,
    SchemaComparator,
    SchemaDefinition,
    SchemaDiff,
)
from envclone.specialized import (
    SpecializedCloneOptions,
    SpecializedSystemsCloner,
    SpecializedSystemsResult,
)
from envclone.validation import (
    CloneValidationReport,
    ValidationConfig,
    ValidationEngine,
    ValidationReport,
)

__all__ = [
    "__version__",
    # Orchestration
    "EnvironmentCloner",
    "CloneCancelledError",
    "OperationRegistry",
    "OperationSnapshot",
    "OperationWriter",
    # Models
    "Environment",
    "EnvironmentType",
    "EnvironmentStatus",
    "AnonymizationType",
    "AnonymizationRule",
    "CloneOptions",
    "ClonePhase",
    "OperationStatus",
    "LogLevel",
    "LogEntry",
    "CloneStatistics",
    "CloneResult",
    "RollbackStatus",
    "RollbackResult",
    "format_bytes",
    # Safety
    "ProductionSafetyGuard",
    "SafetyValidationResult",
    # Database
    "ClientProvider",
    "DatabaseClient",
    "Row",
    "SQLAlchemyDatabaseClient",
    "sqlalchemy_client_provider",
    # Schema
    "SchemaAnalyzer",
    "SchemaComparator",
    "MigrationGenerator",
    "MigrationExecutor",
    "MigrationScript",
    "SchemaDefinition",
    "SchemaDiff",
    # Data
    "TableCopier",
    "TableCopyResult",
    "RowFilter",
    "AnonymizationConfig",
    "AnonymizationOrchestrator",
    "AnonymizationOutcome",
    "suggest_rules",
    "SpecializedCloneOptions",
    "SpecializedSystemsCloner",
    "SpecializedSystemsResult",
    # Backup and validation
    "BackupManager",
    "BackupPoint",
    "ValidationConfig",
    "ValidationEngine",
    "ValidationReport",
    "CloneValidationReport",
    # Monitoring
    "EventChannel",
    "EventType",
    "CloneEvent",
    "Dashboard",
    "DashboardData",
    # Exceptions
    "CloneError",
    "ProductionAccessError",
    "EnvironmentValidationError",
    "NetworkError",
    "OperationTimeoutError",
    "SchemaAnalysisError",
    "SchemaDiffError",
    "MigrationGenerationError",
    "MigrationExecutionError",
    "AnonymizationError",
    "SpecializedCloneError",
    "CriticalError",
    "BackupError",
    "OperationNotFoundError",
    "InvalidPhaseTransitionError",
    "ErrorHandler",
    "RetryConfig",
]
