"""Base service class for database operations."""

from datetime import datetime
from typing import TYPE_CHECKING

from refinery.database.base import QueryResult

if TYPE_CHECKING:
    from ..manager import DatabaseManager


class BaseService:
    """Base class for all database services.

    Provides common functionality and database access patterns
    for domain-specific service classes.
    """

    def __init__(self, db_manager: "DatabaseManager"):
        """Initialize service with database manager.

        Args:
            db_manager: DatabaseManager instance for database access
        """
        self.db_manager = db_manager

    def _system_query(self, sql: str, params: list | None = None) -> QueryResult:
        """Execute a parameterized query against the system database."""
        return self.db_manager.system_query(sql, params or [])

    def _system_execute(self, sql: str, params: list | None = None) -> None:
        """Execute a parameterized statement against the system database."""
        self.db_manager.system_execute(sql, params or [])

    @staticmethod
    def _now() -> datetime:
        return datetime.now()
