"""
Shared test fixtures for envclone.

This module provides reusable test fixtures including:
- FakeDatabaseClient, an in-memory DatabaseClient understanding the SQL
  envclone emits
- Schema definitions for the core tables and the full platform
- Production-like rows for every table
- Environment factories

Usage:
    from tests.fixtures import (
        FakeDatabaseClient,
        core_schema,
        core_rows,
        production_environment,
        training_environment,
    )
"""

from tests.fixtures.database import (
    FakeDatabaseClient,
    UndefinedFunctionError,
    UndefinedTableError,
    UnsupportedStatementError,
    fake_provider,
    normalize,
)
from tests.fixtures.environments import (
    make_environment,
    production_environment,
    testing_environment,
    training_environment,
)
from tests.fixtures.schemas import (
    LOFTS,
    LOFTS_TOUCH_TRIGGER,
    SETTINGS,
    SPECIALIZED_TABLES,
    TOUCH_UPDATED_AT,
    TRANSACTIONS,
    USERS,
    USERS_EMAIL_INDEX,
    USERS_OWN_ROW_POLICY,
    UUID_OSSP,
    core_rows,
    core_schema,
    platform_functions,
    platform_rows,
    platform_schema,
    specialized_rows,
)

__all__ = [
    # Database
    "FakeDatabaseClient",
    "UndefinedFunctionError",
    "UndefinedTableError",
    "UnsupportedStatementError",
    "fake_provider",
    "normalize",
    # Environments
    "make_environment",
    "production_environment",
    "testing_environment",
    "training_environment",
    # Schemas
    "USERS",
    "LOFTS",
    "TRANSACTIONS",
    "SETTINGS",
    "TOUCH_UPDATED_AT",
    "LOFTS_TOUCH_TRIGGER",
    "USERS_EMAIL_INDEX",
    "USERS_OWN_ROW_POLICY",
    "UUID_OSSP",
    "SPECIALIZED_TABLES",
    "core_schema",
    "core_rows",
    "platform_schema",
    "platform_functions",
    "platform_rows",
    "specialized_rows",
]
