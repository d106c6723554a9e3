"""
Schema analysis, comparison and migration.

Pipeline:
    SchemaAnalyzer.analyze_schema -> SchemaDefinition
    SchemaComparator.compare_schemas(source, target) -> SchemaDiff
    MigrationGenerator.generate_migration_script(diff) -> MigrationScript
    MigrationExecutor.apply(script, client)
"""

from envclone.schema.analyzer import (
    SchemaAnalysisOptions,
    SchemaAnalysisResult,
    SchemaAnalyzer,
    SchemaStatistics,
)
from envclone.schema.comparator import ComparisonOptions, SchemaComparator, base_rank
from envclone.schema.graph import DependencyGraph
from envclone.schema.migration import (
    MigrationExecutionResult,
    MigrationExecutor,
    MigrationGenerator,
    MigrationOptions,
    overall_risk,
    risk_for,
    validate_sql,
)
from envclone.schema.models import (
    ColumnDefinition,
    Difference,
    DifferenceAction,
    DifferenceDetails,
    DifferenceType,
    DiffSummary,
    ExtensionDefinition,
    FunctionDefinition,
    IndexDefinition,
    MigrationOperation,
    MigrationScript,
    OperationType,
    PolicyDefinition,
    RiskLevel,
    SchemaDefinition,
    SchemaDiff,
    SchemaObject,
    TableDefinition,
    TriggerDefinition,
)

__all__ = [
    # Analyzer
    "SchemaAnalyzer",
    "SchemaAnalysisOptions",
    "SchemaAnalysisResult",
    "SchemaStatistics",
    # Comparator
    "SchemaComparator",
    "ComparisonOptions",
    "DependencyGraph",
    "base_rank",
    # Migration
    "MigrationGenerator",
    "MigrationExecutor",
    "MigrationExecutionResult",
    "MigrationOptions",
    "overall_risk",
    "risk_for",
    "validate_sql",
    # Models
    "ColumnDefinition",
    "TableDefinition",
    "FunctionDefinition",
    "TriggerDefinition",
    "IndexDefinition",
    "PolicyDefinition",
    "ExtensionDefinition",
    "SchemaObject",
    "SchemaDefinition",
    "DifferenceType",
    "DifferenceAction",
    "DifferenceDetails",
    "Difference",
    "DiffSummary",
    "SchemaDiff",
    "RiskLevel",
    "OperationType",
    "MigrationOperation",
    "MigrationScript",
]
