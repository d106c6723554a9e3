"""
Data models for the environment cloning system.

Models in this module:

Enums:
    - EnvironmentType / EnvironmentStatus: Environment classification
    - AnonymizationType: Kinds of synthetic replacement values
    - ClonePhase: Clone lifecycle phases (state machine)
    - OperationStatus: Coarse status of a clone operation
    - LogLevel: Operation log levels
    - RollbackStatus: Outcome of a rollback request

Configuration:
    - Environment: Persisted/transported environment descriptor (pydantic)
    - AnonymizationRule: Column-level anonymization rule
    - CloneOptions: Options for a single clone run

Results:
    - LogEntry: One structured operation log line
    - CloneStatistics: Counters accumulated during a clone
    - CloneResult: Final result of a clone operation
    - RollbackResult: Result of restoring a backup point
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from envclone.specialized.systems import SpecializedSystemsResult
    from envclone.validation import CloneValidationReport


class EnvironmentType(Enum):
    """Kind of installation an environment represents."""

    PRODUCTION = "production"
    TEST = "test"
    TRAINING = "training"
    DEVELOPMENT = "development"


class EnvironmentStatus(Enum):
    """Operational status of an environment."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    CLONING = "cloning"
    ERROR = "error"


class Environment(BaseModel):
    """
    A named, typed database installation with connection credentials.

    The persisted shape uses camelCase keys (``databaseUrl`` or the legacy
    ``supabaseUrl``, ``anonKey``, ``serviceKey``, ``isProduction``,
    ``allowWrites``); ``from_config``/``to_config`` convert between that shape
    and the model without losing information.

    The production rule (``is_production`` implies ``not allow_writes``) is
    not enforced here. The safety guard rejects such descriptors with a
    precise error.

    Example:
        >>> env = Environment.from_config({
        ...     "id": "test-1",
        ...     "name": "Test",
        ...     "type": "test",
        ...     "databaseUrl": "postgresql+asyncpg://localhost/test",
        ...     "anonKey": "anon",
        ...     "serviceKey": "service",
        ...     "isProduction": False,
        ...     "allowWrites": True,
        ... })
        >>> Environment.from_config(env.to_config()) == env
        True
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1, description="Unique environment identifier")
    name: str = Field(..., description="Human readable name")
    type: EnvironmentType = Field(..., description="Environment type")
    database_url: str = Field(
        default="",
        validation_alias=AliasChoices("database_url", "databaseUrl", "supabaseUrl"),
        serialization_alias="databaseUrl",
        description="SQLAlchemy URL of the database",
    )
    anon_key: str = Field(
        default="",
        validation_alias=AliasChoices("anon_key", "anonKey"),
        serialization_alias="anonKey",
    )
    service_key: str = Field(
        default="",
        validation_alias=AliasChoices("service_key", "serviceKey"),
        serialization_alias="serviceKey",
    )
    is_production: bool = Field(
        default=False,
        validation_alias=AliasChoices("is_production", "isProduction"),
        serialization_alias="isProduction",
    )
    allow_writes: bool = Field(
        default=False,
        validation_alias=AliasChoices("allow_writes", "allowWrites"),
        serialization_alias="allowWrites",
    )
    status: EnvironmentStatus = Field(default=EnvironmentStatus.ACTIVE)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        validation_alias=AliasChoices("created_at", "createdAt"),
        serialization_alias="createdAt",
    )
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        validation_alias=AliasChoices("last_updated", "lastUpdated"),
        serialization_alias="lastUpdated",
    )

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> Environment:
        """Build an environment from its persisted (camelCase) shape."""
        return cls.model_validate(dict(config))

    def to_config(self) -> dict[str, Any]:
        """Serialize to the persisted (camelCase, JSON-compatible) shape."""
        return self.model_dump(mode="json", by_alias=True)


class AnonymizationType(Enum):
    """Kinds of synthetic values an anonymization rule can produce."""

    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    ADDRESS = "address"
    COMPANY = "company"
    TEXT = "text"
    AMOUNT = "amount"
    CUSTOM = "custom"


@dataclass(frozen=True)
class AnonymizationRule:
    """
    Column-level anonymization rule.

    Attributes:
        table_name: Table name, optionally schema-qualified ("public.users").
        column_name: Column whose values are replaced.
        anonymization_type: Kind of replacement value.
        custom_transform: Replacement function, required for CUSTOM rules.
    """

    table_name: str
    column_name: str
    anonymization_type: AnonymizationType
    custom_transform: Callable[[Any], Any] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.table_name:
            raise ValueError("table_name must not be empty")
        if not self.column_name:
            raise ValueError("column_name must not be empty")
        if self.anonymization_type == AnonymizationType.CUSTOM and self.custom_transform is None:
            raise ValueError(
                f"custom rule for {self.table_name}.{self.column_name} requires custom_transform"
            )

    def matches_table(self, qualified_name: str) -> bool:
        """
        Check whether the rule applies to a schema-qualified table name.

        Unqualified rule names match the table in any schema.
        """
        if "." in self.table_name:
            return self.table_name == qualified_name
        return qualified_name.rsplit(".", 1)[-1] == self.table_name


@dataclass(frozen=True)
class CloneOptions:
    """
    Options for a single clone run. Immutable once the clone starts.

    Attributes:
        anonymize_data: Replace sensitive column values before they reach the target.
        include_audit_logs: Clone the audit subsystem.
        include_conversations: Clone conversations, participants and messages.
        include_reservations: Clone reservations, availability, pricing and payments.
        include_bill_notifications: Clone bill frequencies, bill notifications and
            their due-date functions and triggers.
        include_transaction_references: Clone transaction reference amounts,
            categories and the alert system.
        preserve_user_roles: Keep role/permission columns untouched by anonymization.
        create_backup: Take a backup point of the target before writing.
        keep_backup: Keep the backup point after a successful clone; it is
            always kept after a failed one.
        validate_after_clone: Run the validation engine at the end.
        skip_confirmation: Caller already confirmed the destructive clone.
        anonymization_rules: Explicit rules; heuristics are used when empty.
        retry_on_network_error: Retry transient network failures.
        max_retries: Retries per database step when retrying is enabled.
        timeout_seconds: Overall time budget for the clone (None = unlimited).
        anonymization_seed: Seed for reproducible synthetic values.
        batch_size: Rows read/written per statement while copying.
        max_log_age_days: Only clone audit logs newer than this.
        max_message_age_days: Only clone messages newer than this.
        max_reservation_age_days: Only clone reservations newer than this.
    """

    anonymize_data: bool = True
    include_audit_logs: bool = True
    include_conversations: bool = True
    include_reservations: bool = True
    include_bill_notifications: bool = True
    include_transaction_references: bool = True
    preserve_user_roles: bool = True
    create_backup: bool = True
    keep_backup: bool = False
    validate_after_clone: bool = True
    skip_confirmation: bool = False
    anonymization_rules: tuple[AnonymizationRule, ...] = ()
    retry_on_network_error: bool = True
    max_retries: int = 3
    timeout_seconds: float | None = None
    anonymization_seed: int | None = None
    batch_size: int = 500
    max_log_age_days: int | None = None
    max_message_age_days: int | None = None
    max_reservation_age_days: int | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {self.timeout_seconds}")
        for name in ("max_log_age_days", "max_message_age_days", "max_reservation_age_days"):
            value = getattr(self, name)
            if value is not None and value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")

    @classmethod
    def minimal(cls) -> CloneOptions:
        """All optional features off: plain schema + data copy."""
        return cls(
            anonymize_data=False,
            include_audit_logs=False,
            include_conversations=False,
            include_reservations=False,
            include_bill_notifications=False,
            include_transaction_references=False,
            preserve_user_roles=False,
            create_backup=False,
            validate_after_clone=False,
            skip_confirmation=True,
        )

    @classmethod
    def default(cls) -> CloneOptions:
        """Anonymized clone with backup and validation, specialized systems included."""
        return cls()

    @classmethod
    def maximal(
        cls, rules: tuple[AnonymizationRule, ...] | list[AnonymizationRule]
    ) -> CloneOptions:
        """Everything on, with explicit anonymization rules and a fixed seed."""
        return cls(
            anonymize_data=True,
            include_audit_logs=True,
            include_conversations=True,
            include_reservations=True,
            include_bill_notifications=True,
            include_transaction_references=True,
            preserve_user_roles=True,
            create_backup=True,
            validate_after_clone=True,
            skip_confirmation=True,
            anonymization_rules=tuple(rules),
            anonymization_seed=42,
        )


class OperationStatus(Enum):
    """Coarse status of a clone operation."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ClonePhase(Enum):
    """
    Clone lifecycle phases.

    State machine transitions:
        PENDING -> ANALYZING_SCHEMA -> CLONING_DATA -> ANONYMIZING
                -> CLONING_SPECIALIZED_SYSTEMS -> VALIDATING -> COMPLETED
        Any non-terminal phase -> FAILED
        Any non-terminal phase -> CANCELLED

    Phases are never skipped: a phase with nothing to do still runs and logs
    that it was skipped.
    """

    PENDING = "pending"
    """Operation registered, nothing done yet."""

    ANALYZING_SCHEMA = "analyzing_schema"
    """Schema analysis, diff and migration of the target."""

    CLONING_DATA = "cloning_data"
    """Copying tables that need no anonymization."""

    ANONYMIZING = "anonymizing"
    """Anonymizing and loading staged tables."""

    CLONING_SPECIALIZED_SYSTEMS = "cloning_specialized_systems"
    """Audit, conversations and reservations subsystems."""

    VALIDATING = "validating"
    """Post-clone validation."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """True for COMPLETED, FAILED and CANCELLED."""
        return self in (ClonePhase.COMPLETED, ClonePhase.FAILED, ClonePhase.CANCELLED)

    @property
    def operation_status(self) -> OperationStatus:
        """Map the phase onto the coarse operation status."""
        if self == ClonePhase.COMPLETED:
            return OperationStatus.COMPLETED
        if self == ClonePhase.FAILED:
            return OperationStatus.FAILED
        if self == ClonePhase.CANCELLED:
            return OperationStatus.CANCELLED
        return OperationStatus.RUNNING

    def can_transition_to(self, target: ClonePhase) -> bool:
        """
        Check if transition to target phase is valid.

        Args:
            target: The phase to transition to.

        Returns:
            True if the transition is allowed.
        """
        if self.is_terminal:
            return False
        if target in (ClonePhase.FAILED, ClonePhase.CANCELLED):
            return True
        order = WORKFLOW_PHASES
        index = order.index(self)
        return index + 1 < len(order) and order[index + 1] == target


WORKFLOW_PHASES: tuple[ClonePhase, ...] = (
    ClonePhase.PENDING,
    ClonePhase.ANALYZING_SCHEMA,
    ClonePhase.CLONING_DATA,
    ClonePhase.ANONYMIZING,
    ClonePhase.CLONING_SPECIALIZED_SYSTEMS,
    ClonePhase.VALIDATING,
    ClonePhase.COMPLETED,
)


class LogLevel(Enum):
    """Operation log levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class LogEntry:
    """
    One structured line of an operation log.

    Attributes:
        timestamp: When the entry was written (UTC).
        level: Log level.
        component: Component that wrote the entry (e.g. "SchemaPhase").
        message: Human readable message.
        metadata: Optional structured details.
    """

    timestamp: datetime
    level: LogLevel
    component: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CloneStatistics:
    """Counters accumulated while a clone runs."""

    tables_cloned: int = 0
    records_cloned: int = 0
    records_anonymized: int = 0
    functions_cloned: int = 0
    triggers_cloned: int = 0
    bytes_cloned: int = 0
    schema_changes: int = 0

    @property
    def total_size_cloned(self) -> str:
        """Human readable size of the copied row data (e.g. "1.5 MB")."""
        return format_bytes(self.bytes_cloned)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables_cloned": self.tables_cloned,
            "records_cloned": self.records_cloned,
            "records_anonymized": self.records_anonymized,
            "functions_cloned": self.functions_cloned,
            "triggers_cloned": self.triggers_cloned,
            "total_size_cloned": self.total_size_cloned,
            "schema_changes": self.schema_changes,
        }


@dataclass
class CloneResult:
    """
    Final result of a clone operation.

    The orchestrator always returns one of these (``success=False`` on
    failure) instead of raising, so partial progress stays visible.
    """

    success: bool
    operation_id: str
    source_environment_id: str
    target_environment_id: str
    statistics: CloneStatistics = field(default_factory=CloneStatistics)
    backup_id: str | None = None
    validation_result: CloneValidationReport | None = None
    specialized_systems_result: SpecializedSystemsResult | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    retries_performed: int = 0
    duration_seconds: float = 0.0
    completed_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class RollbackStatus(Enum):
    """Outcome of a rollback request."""

    RESTORED = "restored"
    """All tables of the backup point were restored."""

    WARNING = "warning"
    """Nothing was restored; the backup point is missing or unusable."""


@dataclass(frozen=True)
class RollbackResult:
    """
    Result of restoring a backup point.

    A missing or corrupt backup is reported here as ``RollbackStatus.WARNING``
    rather than raised, so callers must inspect ``status``.
    """

    environment_id: str
    backup_id: str
    status: RollbackStatus
    tables_restored: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def restored(self) -> bool:
        return self.status == RollbackStatus.RESTORED


def format_bytes(size: int) -> str:
    """
    Format a byte count for humans.

    Example:
        >>> format_bytes(1536)
        '1.5 KB'
    """
    if size < 1024:
        return f"{size} B"
    value = float(size)
    for unit in ("KB", "MB", "GB"):
        value /= 1024
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}"
    return f"{value:.1f} GB"
