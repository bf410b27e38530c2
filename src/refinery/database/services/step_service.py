"""Step service for memoized workflow step outputs."""

import json
from typing import Any

from refinery.database.base import DatabaseError
from refinery.database.services.base import BaseService

MISSING = object()


class StepService(BaseService):
    """Service for the workflow_steps table.

    A row exists only for steps that completed; its output is replayed when
    the workflow for the same plan runs the step again.
    """

    def get_output(self, plan_id: str, step_name: str) -> Any:
        """Return the memoized output, or the ``MISSING`` sentinel."""
        try:
            result = self._system_query(
                "SELECT output FROM workflow_steps WHERE plan_id = ? AND step_name = ?",
                [plan_id, step_name],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to read step {step_name}: {e}") from e

        if result.empty():
            return MISSING
        raw = result.first()["output"]
        return json.loads(raw) if raw is not None else None

    def record_output(
        self, plan_id: str, step_name: str, output: Any, attempts: int
    ) -> None:
        """Memoize a completed step; the first recorded output wins."""
        try:
            self._system_execute(
                """
                INSERT INTO workflow_steps (plan_id, step_name, output, attempts, completed_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (plan_id, step_name) DO NOTHING
                """,
                [plan_id, step_name, json.dumps(output, default=str), attempts, self._now()],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to record step {step_name}: {e}") from e

    def list_steps(self, plan_id: str) -> list[dict[str, Any]]:
        try:
            result = self._system_query(
                """
                SELECT step_name, attempts, completed_at FROM workflow_steps
                WHERE plan_id = ?
                ORDER BY completed_at
                """,
                [plan_id],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to list steps for plan {plan_id}: {e}") from e
        return result.rows
