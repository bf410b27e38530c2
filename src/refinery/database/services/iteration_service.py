"""Iteration service for the append-only iteration history of a plan."""

import json

from refinery.database.base import DatabaseError
from refinery.database.models.iteration import TransformationIteration
from refinery.database.services.base import BaseService


class IterationService(BaseService):
    """Service for the transformation_iterations table.

    Rows are keyed by (plan_id, iteration_number) and written once; a second
    insert for the same key is silently ignored.
    """

    def insert_iteration(self, iteration: TransformationIteration) -> None:
        """Insert an iteration unless one with the same key already exists.

        Raises:
            DatabaseError: If the insert fails
        """
        sql = """
        INSERT INTO transformation_iterations (
            plan_id, iteration_number, code, execution_time_ms, sample_size,
            success, output, error_message, accuracy, meets_threshold,
            evaluation_notes, issues_found, improvements_suggested, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (plan_id, iteration_number) DO NOTHING
        """

        params = [
            iteration.plan_id,
            iteration.iteration_number,
            iteration.code,
            iteration.execution_time_ms,
            iteration.sample_size,
            iteration.success,
            json.dumps(iteration.output, default=str),
            iteration.error_message,
            iteration.accuracy,
            iteration.meets_threshold,
            iteration.evaluation_notes,
            json.dumps(iteration.issues_found),
            json.dumps(iteration.improvements_suggested),
            iteration.created_at or self._now(),
        ]

        try:
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(
                f"Failed to insert iteration {iteration.iteration_number} "
                f"for plan {iteration.plan_id}: {e}"
            ) from e

    def list_iterations(self, plan_id: str) -> list[TransformationIteration]:
        """All iterations of a plan in iteration order."""
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_iterations
                WHERE plan_id = ?
                ORDER BY iteration_number
                """,
                [plan_id],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to list iterations for {plan_id}: {e}") from e
        return [TransformationIteration.from_row(row) for row in result.rows]

    def get_iteration(
        self, plan_id: str, iteration_number: int
    ) -> TransformationIteration | None:
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_iterations
                WHERE plan_id = ? AND iteration_number = ?
                """,
                [plan_id, iteration_number],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to get iteration {iteration_number} for {plan_id}: {e}"
            ) from e
        if result.empty():
            return None
        return TransformationIteration.from_row(result.first())

    def get_latest_iteration(self, plan_id: str) -> TransformationIteration | None:
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_iterations
                WHERE plan_id = ?
                ORDER BY iteration_number DESC
                LIMIT 1
                """,
                [plan_id],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to get latest iteration for {plan_id}: {e}"
            ) from e
        if result.empty():
            return None
        return TransformationIteration.from_row(result.first())

    def get_satisfying_iteration(self, plan_id: str) -> TransformationIteration | None:
        """The latest iteration that met the plan's threshold, if any."""
        try:
            result = self._system_query(
                """
                SELECT * FROM transformation_iterations
                WHERE plan_id = ? AND meets_threshold
                ORDER BY iteration_number DESC
                LIMIT 1
                """,
                [plan_id],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to get satisfying iteration for {plan_id}: {e}"
            ) from e
        if result.empty():
            return None
        return TransformationIteration.from_row(result.first())

    def count_iterations(self, plan_id: str) -> int:
        try:
            result = self._system_query(
                "SELECT COUNT(*) AS count FROM transformation_iterations WHERE plan_id = ?",
                [plan_id],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to count iterations for {plan_id}: {e}") from e
        return int(result.first()["count"])
