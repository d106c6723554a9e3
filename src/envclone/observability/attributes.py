"""
Standard span attribute names for envclone.

Database attributes follow the OpenTelemetry semantic conventions; the rest
live under the ``envclone.`` namespace.
"""

# =============================================================================
# Operation Attributes
# =============================================================================

ATTR_OPERATION_ID = "envclone.operation.id"
"""Clone operation identifier (string)."""

ATTR_PHASE = "envclone.phase"
"""Current clone phase (ClonePhase value)."""

ATTR_SOURCE_ENVIRONMENT = "envclone.source.environment_id"
"""Identifier of the source environment (string)."""

ATTR_TARGET_ENVIRONMENT = "envclone.target.environment_id"
"""Identifier of the target environment (string)."""

ATTR_ENVIRONMENT_TYPE = "envclone.environment.type"
"""Environment type (production, test, training, development)."""

# =============================================================================
# Schema Attributes
# =============================================================================

ATTR_SCHEMA_NAMES = "envclone.schema.names"
"""Comma-separated schema names analyzed (string)."""

ATTR_TABLE_NAME = "envclone.table.name"
"""Qualified table name (string)."""

ATTR_DIFFERENCE_COUNT = "envclone.diff.count"
"""Number of schema differences (integer)."""

ATTR_MIGRATION_ID = "envclone.migration.id"
"""Migration script identifier (string)."""

ATTR_MIGRATION_OPERATION_COUNT = "envclone.migration.operation_count"
"""Number of operations in a migration script (integer)."""

# =============================================================================
# Data Attributes
# =============================================================================

ATTR_ROW_COUNT = "envclone.rows.count"
"""Number of rows processed (integer)."""

ATTR_RULE_COUNT = "envclone.anonymization.rule_count"
"""Number of anonymization rules applied (integer)."""

ATTR_SYSTEM_NAME = "envclone.specialized.system"
"""Specialized system name (audit, conversations, reservations)."""

ATTR_BACKUP_ID = "envclone.backup.id"
"""Backup point identifier (string)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system (always "postgresql" for SQL clients)."""

ATTR_DB_OPERATION = "db.operation"
"""Leading SQL keyword of the statement (SELECT, INSERT, ...)."""

ATTR_DB_FUNCTION = "db.function"
"""Name of the stored function invoked."""
