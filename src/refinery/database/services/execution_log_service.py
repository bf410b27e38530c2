"""Execution log service for production runs of approved plans."""

from refinery.database.base import DatabaseError
from refinery.database.models.execution_log import (
    ExecutionOutcome,
    TransformationExecutionLog,
)
from refinery.database.services.base import BaseService


class ExecutionLogService(BaseService):
    """Service for the transformation_execution_logs table (one row per plan)."""

    def start_execution(
        self,
        plan_id: str,
        executed_by: str,
        code: str,
        iteration_number: int | None,
    ) -> TransformationExecutionLog:
        """Record that a production run started.

        A later attempt for the same plan resets the row and increments
        ``attempts``.
        """
        now = self._now()
        existing = self.get_log(plan_id)

        try:
            if existing is None:
                self._system_execute(
                    """
                    INSERT INTO transformation_execution_logs (
                        plan_id, executed_by, started_at, outcome, code,
                        iteration_number, attempts
                    ) VALUES (?, ?, ?, ?, ?, ?, 1)
                    """,
                    [
                        plan_id,
                        executed_by,
                        now,
                        ExecutionOutcome.RUNNING.value,
                        code,
                        iteration_number,
                    ],
                )
            else:
                self._system_execute(
                    """
                    UPDATE transformation_execution_logs SET
                        executed_by = ?, started_at = ?, completed_at = NULL,
                        outcome = ?, code = ?, iteration_number = ?,
                        rows_affected = NULL, duration_ms = NULL,
                        error_message = NULL, attempts = attempts + 1,
                        snapshot_table = NULL
                    WHERE plan_id = ?
                    """,
                    [
                        executed_by,
                        now,
                        ExecutionOutcome.RUNNING.value,
                        code,
                        iteration_number,
                        plan_id,
                    ],
                )
        except Exception as e:
            raise DatabaseError(
                f"Failed to record execution start for plan {plan_id}: {e}"
            ) from e

        return self.get_log(plan_id)

    def record_snapshot(self, plan_id: str, snapshot_table: str) -> None:
        """Remember the table holding the pre-execution copy of the asset."""
        try:
            self._system_execute(
                "UPDATE transformation_execution_logs SET snapshot_table = ? WHERE plan_id = ?",
                [snapshot_table, plan_id],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to record snapshot for plan {plan_id}: {e}"
            ) from e

    def complete_execution(
        self, plan_id: str, rows_affected: int, duration_ms: int
    ) -> None:
        self._finish(plan_id, ExecutionOutcome.SUCCESS, rows_affected, duration_ms, None)

    def fail_execution(self, plan_id: str, error_message: str, duration_ms: int) -> None:
        self._finish(plan_id, ExecutionOutcome.FAILED, None, duration_ms, error_message)

    def _finish(
        self,
        plan_id: str,
        outcome: ExecutionOutcome,
        rows_affected: int | None,
        duration_ms: int,
        error_message: str | None,
    ) -> None:
        try:
            self._system_execute(
                """
                UPDATE transformation_execution_logs SET
                    completed_at = ?, outcome = ?, rows_affected = ?,
                    duration_ms = ?, error_message = ?
                WHERE plan_id = ?
                """,
                [
                    self._now(),
                    outcome.value,
                    rows_affected,
                    duration_ms,
                    error_message,
                    plan_id,
                ],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to record execution {outcome.value} for plan {plan_id}: {e}"
            ) from e

    def mark_rolled_back(self, plan_id: str, rolled_back_by: str) -> None:
        try:
            self._system_execute(
                """
                UPDATE transformation_execution_logs SET
                    outcome = ?, rolled_back_by = ?, rolled_back_at = ?
                WHERE plan_id = ?
                """,
                [
                    ExecutionOutcome.ROLLED_BACK.value,
                    rolled_back_by,
                    self._now(),
                    plan_id,
                ],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to mark plan {plan_id} rolled back: {e}") from e

    def get_log(self, plan_id: str) -> TransformationExecutionLog | None:
        try:
            result = self._system_query(
                "SELECT * FROM transformation_execution_logs WHERE plan_id = ?",
                [plan_id],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to get execution log for plan {plan_id}: {e}"
            ) from e
        if result.empty():
            return None
        return TransformationExecutionLog.from_row(result.first())
