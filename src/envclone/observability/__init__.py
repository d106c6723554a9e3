"""
Observability utilities for envclone.

Tracing is optional: without OpenTelemetry installed every component falls
back to a NullTracer.

Example:
    >>> from envclone.observability import create_tracer, ATTR_OPERATION_ID
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("envclone.example", {ATTR_OPERATION_ID: "clone_1"}):
    ...     pass
"""

from envclone.observability.attributes import (
    ATTR_BACKUP_ID,
    ATTR_DB_FUNCTION,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DIFFERENCE_COUNT,
    ATTR_ENVIRONMENT_TYPE,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_OPERATION_COUNT,
    ATTR_OPERATION_ID,
    ATTR_PHASE,
    ATTR_ROW_COUNT,
    ATTR_RULE_COUNT,
    ATTR_SCHEMA_NAMES,
    ATTR_SOURCE_ENVIRONMENT,
    ATTR_SYSTEM_NAME,
    ATTR_TABLE_NAME,
    ATTR_TARGET_ENVIRONMENT,
)
from envclone.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from envclone.observability.tracing import OTEL_AVAILABLE

__all__ = [
    # Tracing
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BACKUP_ID",
    "ATTR_DB_FUNCTION",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DIFFERENCE_COUNT",
    "ATTR_ENVIRONMENT_TYPE",
    "ATTR_MIGRATION_ID",
    "ATTR_MIGRATION_OPERATION_COUNT",
    "ATTR_OPERATION_ID",
    "ATTR_PHASE",
    "ATTR_ROW_COUNT",
    "ATTR_RULE_COUNT",
    "ATTR_SCHEMA_NAMES",
    "ATTR_SOURCE_ENVIRONMENT",
    "ATTR_SYSTEM_NAME",
    "ATTR_TABLE_NAME",
    "ATTR_TARGET_ENVIRONMENT",
]
