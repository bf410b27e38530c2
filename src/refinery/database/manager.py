"""Database manager for Refinery - handles system and data database separation."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .base import Database, DatabaseError, QueryResult
from .duckdb import DuckDBDatabase


class DatabaseManager:
    """Manages system and data database separation for Refinery.

    - System database: plans, iterations, approvals, execution logs,
      workflow steps and jobs
    - Data database: the assets being sampled and transformed

    Connections are thread-local; every thread gets its own Database
    instances, so a transaction opened on one thread only covers the
    statements issued from that thread.
    """

    # Class-level tracking of initialized databases to prevent schema conflicts
    _initialized_dbs: set[str] = set()
    _init_lock = threading.Lock()

    def __init__(
        self, system_db_path: str | Path, data_db_path: str | Path | None = None
    ):
        """Initialize database manager.

        Args:
            system_db_path: Path to the system database (Refinery metadata)
            data_db_path: Optional path to the data database (assets)
        """
        self.system_db_path = str(system_db_path)
        self.data_db_path = str(data_db_path) if data_db_path else None
        self._thread_local = threading.local()

    def _get_system_db(self) -> Database:
        """Get or create thread-local system database connection."""
        if not hasattr(self._thread_local, "system_db"):
            self._thread_local.system_db = DuckDBDatabase(self.system_db_path)
            self._ensure_schema_initialized(
                self._thread_local.system_db, self.system_db_path
            )
        return self._thread_local.system_db

    def _get_data_db(self) -> Database:
        """Get or create thread-local data database connection."""
        if self.data_db_path is None:
            raise DatabaseError("No data database configured")

        if not hasattr(self._thread_local, "data_db"):
            self._thread_local.data_db = DuckDBDatabase(self.data_db_path)
        return self._thread_local.data_db

    def _ensure_schema_initialized(self, db: Database, db_path: str) -> None:
        """Ensure database schema is initialized exactly once per database file."""
        abs_path = str(Path(db_path).resolve())

        with self._init_lock:
            if abs_path not in self._initialized_dbs:
                try:
                    db.init_schema()
                    self._initialized_dbs.add(abs_path)
                except Exception as e:
                    # Not marked as initialized so another thread can retry
                    raise DatabaseError(
                        f"Schema initialization failed for {abs_path}: {e}"
                    ) from e

    def system_query(self, sql: str, params: list | None = None) -> QueryResult:
        """Execute a query against the system database."""
        return self._get_system_db().query(sql, params)

    def system_execute(self, sql: str, params: list | None = None) -> None:
        """Execute a statement against the system database."""
        self._get_system_db().execute(sql, params)

    @contextmanager
    def system_transaction(self) -> Iterator[None]:
        """Group system database statements issued on this thread atomically."""
        with self._get_system_db().transaction():
            yield

    def data_query(self, sql: str, params: list | None = None) -> QueryResult:
        """Execute a query against the data database.

        Raises:
            DatabaseError: If query execution fails or no data DB configured
        """
        return self._get_data_db().query(sql, params)

    def data_execute(self, sql: str, params: list | None = None) -> None:
        """Execute a statement against the data database.

        Raises:
            DatabaseError: If statement execution fails or no data DB configured
        """
        self._get_data_db().execute(sql, params)

    def data_executemany(self, sql: str, params_seq: list[list]) -> None:
        self._get_data_db().executemany(sql, params_seq)

    @contextmanager
    def data_transaction(self) -> Iterator[None]:
        """Group data database statements issued on this thread atomically."""
        with self._get_data_db().transaction():
            yield

    def close(self) -> None:
        """Close all database connections for the current thread."""
        if hasattr(self._thread_local, "system_db"):
            self._thread_local.system_db.close()
            delattr(self._thread_local, "system_db")

        if hasattr(self._thread_local, "data_db"):
            self._thread_local.data_db.close()
            delattr(self._thread_local, "data_db")

    def __enter__(self) -> "DatabaseManager":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit - ensure connections are closed."""
        self.close()

    def __del__(self) -> None:
        """Destructor - ensure connections are closed."""
        self.close()
