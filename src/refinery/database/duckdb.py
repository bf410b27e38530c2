"""DuckDB database implementation."""

import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import duckdb

from refinery.database.base import (
    Database,
    DatabaseError,
    QueryResult,
    WriteConflictError,
)


def _wrap_error(prefix: str, error: Exception) -> DatabaseError:
    if isinstance(error, duckdb.TransactionException):
        return WriteConflictError(f"{prefix}: {error}")
    return DatabaseError(f"{prefix}: {error}")


class DuckDBDatabase(Database):
    """DuckDB implementation of the Database interface."""

    def __init__(self, db_path: str | Path):
        """Initialize DuckDB database connection.

        Args:
            db_path: Path to the DuckDB database file.
                Use ":memory:" for in-memory database.
        """
        self.db_path = str(db_path)
        self._connection: duckdb.DuckDBPyConnection | None = None
        self._transaction_depth = 0
        self._connect()

    def _connect(self) -> None:
        """Establish connection to the database."""
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = duckdb.connect(self.db_path)
        except Exception as e:
            raise DatabaseError(
                f"Failed to connect to DuckDB at {self.db_path}: {e}"
            ) from e

    def _ensure_connected(self) -> duckdb.DuckDBPyConnection:
        """Ensure we have a valid database connection."""
        if self._connection is None:
            self._connect()

        if self._connection is None:
            raise DatabaseError("Database connection is not available")

        return self._connection

    def query(self, sql: str, params: list | None = None) -> QueryResult:
        """Execute a query and return results.

        Args:
            sql: SQL statement producing rows
            params: Optional list of parameters for the query

        Returns:
            QueryResult containing the query results

        Raises:
            DatabaseError: If query execution fails
        """
        start_time = time.time()

        try:
            conn = self._ensure_connected()
            cursor = conn.execute(sql, params) if params else conn.execute(sql)

            rows = cursor.fetchall()
            columns = [desc[0] for desc in cursor.description or []]
            result_rows = [dict(zip(columns, row, strict=False)) for row in rows]

            return QueryResult(rows=result_rows, execution_time=time.time() - start_time)

        except Exception as e:
            raise _wrap_error("Query execution failed", e) from e

    def execute(self, sql: str, params: list | None = None) -> None:
        """Execute a DDL or DML statement (CREATE, INSERT, UPDATE, DELETE).

        Args:
            sql: SQL statement to execute
            params: Optional list of parameters for the statement

        Raises:
            DatabaseError: If statement execution fails
        """
        try:
            conn = self._ensure_connected()
            if params:
                conn.execute(sql, params)
            else:
                conn.execute(sql)

        except Exception as e:
            raise _wrap_error("Statement execution failed", e) from e

    def executemany(self, sql: str, params_seq: list[list]) -> None:
        if not params_seq:
            return
        try:
            self._ensure_connected().executemany(sql, params_seq)
        except Exception as e:
            raise _wrap_error("Batch execution failed", e) from e

    @contextmanager
    def transaction(self) -> Iterator[None]:
        conn = self._ensure_connected()
        if self._transaction_depth > 0:
            self._transaction_depth += 1
            try:
                yield
            finally:
                self._transaction_depth -= 1
            return

        try:
            conn.begin()
        except Exception as e:
            raise _wrap_error("Failed to begin transaction", e) from e

        self._transaction_depth = 1
        try:
            yield
        except BaseException:
            self._transaction_depth = 0
            try:
                conn.rollback()
            except duckdb.Error:
                # The transaction may already be aborted by the failing statement
                pass
            raise

        self._transaction_depth = 0
        try:
            conn.commit()
        except Exception as e:
            try:
                conn.rollback()
            except duckdb.Error:
                pass
            raise _wrap_error("Transaction commit failed", e) from e

    def close(self) -> None:
        """Close the database connection and clean up resources."""
        if self._connection is not None:
            try:
                self._connection.close()
            except Exception:
                # Ignore errors when closing
                pass
            finally:
                self._connection = None

    def init_schema(self) -> None:
        """Initialize the Refinery system schema.

        Raises:
            DatabaseError: If schema creation fails
        """
        try:
            # Plans; status transitions are compare-and-swap on (status, version)
            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_plans(
                    plan_id TEXT PRIMARY KEY,
                    source_type TEXT NOT NULL,
                    source_id TEXT,
                    target_asset TEXT NOT NULL,
                    target_column TEXT,
                    transformation_type TEXT NOT NULL,
                    description TEXT NOT NULL,
                    parameters TEXT,
                    requested_by TEXT NOT NULL,
                    accuracy_threshold DOUBLE NOT NULL,
                    max_iterations INTEGER NOT NULL,
                    generated_code TEXT,
                    iteration_count INTEGER NOT NULL DEFAULT 0,
                    final_accuracy DOUBLE,
                    status TEXT NOT NULL,
                    risk_level TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    lock_owner TEXT,
                    cancel_requested BOOLEAN NOT NULL DEFAULT FALSE,
                    error_message TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """)

            self.execute("""
                CREATE INDEX IF NOT EXISTS idx_transformation_plans_asset
                ON transformation_plans(target_asset);
            """)

            # Append-only; rows are never updated
            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_iterations(
                    plan_id TEXT NOT NULL,
                    iteration_number INTEGER NOT NULL,
                    code TEXT NOT NULL,
                    execution_time_ms INTEGER,
                    sample_size INTEGER,
                    success BOOLEAN NOT NULL,
                    output TEXT,
                    error_message TEXT,
                    accuracy DOUBLE,
                    meets_threshold BOOLEAN NOT NULL,
                    evaluation_notes TEXT,
                    issues_found TEXT,
                    improvements_suggested TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (plan_id, iteration_number)
                );
            """)

            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_approvals(
                    plan_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    reviewed_by TEXT,
                    comment TEXT,
                    requested_at TIMESTAMP,
                    reviewed_at TIMESTAMP
                );
            """)

            self.execute("""
                CREATE TABLE IF NOT EXISTS transformation_execution_logs(
                    plan_id TEXT PRIMARY KEY,
                    executed_by TEXT NOT NULL,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP,
                    outcome TEXT NOT NULL,
                    code TEXT NOT NULL,
                    iteration_number INTEGER,
                    rows_affected INTEGER,
                    duration_ms INTEGER,
                    error_message TEXT,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    snapshot_table TEXT,
                    rolled_back_by TEXT,
                    rolled_back_at TIMESTAMP
                );
            """)

            # Memoized outputs of completed workflow steps
            self.execute("""
                CREATE TABLE IF NOT EXISTS workflow_steps(
                    plan_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    output TEXT,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    completed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (plan_id, step_name)
                );
            """)

            # Background jobs
            self.execute("""
                CREATE TABLE IF NOT EXISTS jobs(
                    job_id TEXT PRIMARY KEY,
                    plan_id TEXT,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """)

        except Exception as e:
            raise DatabaseError(f"Schema initialization failed: {e}") from e

    def __enter__(self) -> "DuckDBDatabase":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit - ensure connection is closed."""
        self.close()

    def __del__(self) -> None:
        """Destructor - ensure connection is closed."""
        self.close()
