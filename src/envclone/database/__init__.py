"""
Database access for envclone.

Components depend on the DatabaseClient protocol only; SQLAlchemyDatabaseClient
is the production implementation.
"""

from envclone.database.client import ClientProvider, DatabaseClient, Row
from envclone.database.postgresql import SQLAlchemyDatabaseClient, sqlalchemy_client_provider

__all__ = [
    "ClientProvider",
    "DatabaseClient",
    "Row",
    "SQLAlchemyDatabaseClient",
    "sqlalchemy_client_provider",
]
