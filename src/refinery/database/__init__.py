"""Database module for Refinery."""

from refinery.database.base import (
    Database,
    DatabaseError,
    QueryResult,
    WriteConflictError,
)
from refinery.database.duckdb import DuckDBDatabase
from refinery.database.manager import DatabaseManager

__all__ = [
    "Database",
    "DatabaseError",
    "QueryResult",
    "WriteConflictError",
    "DuckDBDatabase",
    "DatabaseManager",
]
