"""
Value objects describing database schemas, schema diffs and migration scripts.

All classes here are frozen dataclasses: a SchemaDefinition is a snapshot
taken at ``analyzed_at`` and is never mutated afterwards; diffs and scripts
are produced from snapshots and passed along by reference.

Schema objects:
    - ColumnDefinition, TableDefinition
    - FunctionDefinition, TriggerDefinition
    - IndexDefinition, PolicyDefinition, ExtensionDefinition
    - SchemaDefinition

Diff:
    - DifferenceType, DifferenceAction
    - DifferenceDetails, Difference, DiffSummary, SchemaDiff

Migration:
    - RiskLevel, OperationType
    - MigrationOperation, MigrationScript
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class ColumnDefinition:
    """A table column, enough to regenerate its CREATE TABLE clause."""

    name: str
    data_type: str
    nullable: bool = True
    default: str | None = None
    ordinal_position: int = 0


@dataclass(frozen=True)
class TableDefinition:
    """A base table with its ordered columns."""

    schema: str
    name: str
    columns: tuple[ColumnDefinition, ...] = ()
    comment: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    def column(self, name: str) -> ColumnDefinition | None:
        """Look up a column by name."""
        for column in self.columns:
            if column.name == name:
                return column
        return None


@dataclass(frozen=True)
class FunctionDefinition:
    """A stored function."""

    schema: str
    name: str
    return_type: str
    language: str
    body: str
    parameters: str = ""
    volatility: str = "VOLATILE"
    security_definer: bool = False
    comment: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"


@dataclass(frozen=True)
class TriggerDefinition:
    """A row trigger bound to a table and a function."""

    schema: str
    table: str
    name: str
    timing: str
    events: tuple[str, ...]
    function_name: str
    function_schema: str = "public"
    condition: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.name}"

    @property
    def table_qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"

    @property
    def function_qualified_name(self) -> str:
        return f"{self.function_schema}.{self.function_name}"


@dataclass(frozen=True)
class IndexDefinition:
    """An index on a table."""

    schema: str
    table: str
    name: str
    columns: tuple[str, ...]
    unique: bool = False
    index_type: str = "btree"

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.name}"

    @property
    def table_qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"


@dataclass(frozen=True)
class PolicyDefinition:
    """A row level security policy."""

    schema: str
    table: str
    name: str
    command: str = "ALL"
    permissive: bool = True
    roles: tuple[str, ...] = ()
    using_expression: str | None = None
    with_check_expression: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}.{self.name}"

    @property
    def table_qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"


@dataclass(frozen=True)
class ExtensionDefinition:
    """An installed extension."""

    name: str
    version: str | None = None
    schema: str = "public"

    @property
    def qualified_name(self) -> str:
        return self.name


SchemaObject = (
    TableDefinition
    | FunctionDefinition
    | TriggerDefinition
    | IndexDefinition
    | PolicyDefinition
    | ExtensionDefinition
)


@dataclass(frozen=True)
class SchemaDefinition:
    """Immutable snapshot of a database schema."""

    schemas: tuple[str, ...] = ()
    tables: tuple[TableDefinition, ...] = ()
    functions: tuple[FunctionDefinition, ...] = ()
    triggers: tuple[TriggerDefinition, ...] = ()
    indexes: tuple[IndexDefinition, ...] = ()
    policies: tuple[PolicyDefinition, ...] = ()
    extensions: tuple[ExtensionDefinition, ...] = ()
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def table(self, qualified_name: str) -> TableDefinition | None:
        """Look up a table by ``schema.name``."""
        for table in self.tables:
            if table.qualified_name == qualified_name:
                return table
        return None

    def has_table(self, name: str) -> bool:
        """True if a table matches ``schema.name`` or, unqualified, any schema."""
        if "." in name:
            return self.table(name) is not None
        return any(table.name == name for table in self.tables)


class DifferenceType(Enum):
    """Kind of schema object a difference concerns."""

    TABLE = "table"
    FUNCTION = "function"
    TRIGGER = "trigger"
    INDEX = "index"
    POLICY = "policy"
    EXTENSION = "extension"


class DifferenceAction(Enum):
    """What must happen to the target to match the source."""

    CREATE = "create"
    ALTER = "alter"
    DROP = "drop"


@dataclass(frozen=True)
class DifferenceDetails:
    """
    Before/after state of a difference.

    Attributes:
        reason: Human readable explanation.
        before: Object as it exists in the target (None for creates).
        after: Object as it exists in the source (None for drops).
        changes: Column level changes for altered tables
            (``{"added": [...], "dropped": [...], "modified": [...]}``).
    """

    reason: str
    before: Any = None
    after: Any = None
    changes: dict[str, list[str]] | None = None


@dataclass(frozen=True)
class Difference:
    """
    One structural difference between two schemas.

    Attributes:
        type: Kind of object.
        action: create, alter or drop.
        object_name: Object name (unqualified).
        schema_name: Schema of the object.
        details: Before/after state.
        dependencies: Qualified names of objects this one requires.
        priority: Execution rank; dependencies always rank lower.
        qualified_name: Key identifying the object across schemas.
    """

    type: DifferenceType
    action: DifferenceAction
    object_name: str
    schema_name: str
    details: DifferenceDetails
    qualified_name: str
    dependencies: tuple[str, ...] = ()
    priority: int = 0


@dataclass(frozen=True)
class DiffSummary:
    """Counts of differences per object type."""

    total_differences: int = 0
    table_changes: int = 0
    function_changes: int = 0
    trigger_changes: int = 0
    index_changes: int = 0
    policy_changes: int = 0
    extension_changes: int = 0

    @classmethod
    def from_differences(cls, differences: tuple[Difference, ...]) -> DiffSummary:
        """Derive the summary from a list of differences."""

        def count(kind: DifferenceType) -> int:
            return sum(1 for d in differences if d.type == kind)

        return cls(
            total_differences=len(differences),
            table_changes=count(DifferenceType.TABLE),
            function_changes=count(DifferenceType.FUNCTION),
            trigger_changes=count(DifferenceType.TRIGGER),
            index_changes=count(DifferenceType.INDEX),
            policy_changes=count(DifferenceType.POLICY),
            extension_changes=count(DifferenceType.EXTENSION),
        )


@dataclass(frozen=True)
class SchemaDiff:
    """Dependency-ordered differences between a source and a target schema."""

    differences: tuple[Difference, ...] = ()
    summary: DiffSummary = field(default_factory=DiffSummary)
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def has_changes(self) -> bool:
        return bool(self.differences)

    def of_type(self, kind: DifferenceType) -> tuple[Difference, ...]:
        return tuple(d for d in self.differences if d.type == kind)


class RiskLevel(Enum):
    """Risk of a migration operation."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OperationType(Enum):
    DDL = "ddl"
    DML = "dml"


@dataclass(frozen=True)
class MigrationOperation:
    """
    One executable migration step.

    Attributes:
        id: ``{type}_{action}_{name}``.
        object_name: Qualified name of the object the step creates/changes.
        dependencies: Qualified names of objects that must exist first.
    """

    id: str
    type: OperationType
    description: str
    sql: str
    object_name: str
    dependencies: tuple[str, ...] = ()
    risk_level: RiskLevel = RiskLevel.LOW
    estimated_duration_ms: int = 0


@dataclass(frozen=True)
class MigrationScript:
    """Ordered migration operations and their inverse."""

    id: str
    operations: tuple[MigrationOperation, ...]
    rollback_operations: tuple[MigrationOperation, ...]
    estimated_duration_ms: int
    risk_level: RiskLevel
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_empty(self) -> bool:
        return not self.operations
