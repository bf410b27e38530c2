"""Base classes for database implementations."""

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any


@dataclass
class QueryResult:
    """Result of a database query operation."""

    rows: list[dict[str, Any]]
    execution_time: float | None = None

    def empty(self) -> bool:
        """Check if the result set is empty."""
        return len(self.rows) == 0

    def count(self) -> int:
        """Get the number of rows in the result set."""
        return len(self.rows)

    def first(self) -> dict[str, Any] | None:
        """Get the first row, or None if empty."""
        return self.rows[0] if self.rows else None

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)


class Database(ABC):
    """Abstract base class for database implementations."""

    @abstractmethod
    def query(self, sql: str, params: list | None = None) -> QueryResult:
        """Execute a query and return its rows.

        Also used for DML with a RETURNING clause.

        Raises:
            DatabaseError: If query execution fails
        """

    @abstractmethod
    def execute(self, sql: str, params: list | None = None) -> None:
        """Execute a DDL or DML statement (CREATE, INSERT, UPDATE, DELETE).

        Raises:
            DatabaseError: If statement execution fails
        """

    @abstractmethod
    def executemany(self, sql: str, params_seq: list[list]) -> None:
        """Execute one parameterized statement for every parameter list."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Run the enclosed statements in one transaction.

        Commits on normal exit and rolls back when the block raises.
        Nested use joins the outer transaction.
        """

    @abstractmethod
    def close(self) -> None:
        """Close the database connection and clean up resources."""

    @abstractmethod
    def init_schema(self) -> None:
        """Initialize the Refinery system schema.

        Creates the plan, iteration, approval, execution log, workflow step
        and job tables. Idempotent.

        Raises:
            DatabaseError: If schema creation fails
        """


class DatabaseError(Exception):
    """Base exception for database-related errors."""

    pass


class WriteConflictError(DatabaseError):
    """Raised when a concurrent transaction modified the same rows first."""

    pass
