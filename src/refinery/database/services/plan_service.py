"""Plan service for persisting transformation plans and their status."""

import json
import logging
from typing import Any
from uuid import uuid4

from refinery.database.base import DatabaseError, WriteConflictError
from refinery.database.models.plan import (
    PlanStatus,
    TransformationPlan,
    TransformationRequest,
)
from refinery.database.services.base import BaseService
from refinery.error_handling import InvalidStateTransitionError, PlanNotFoundError

logger = logging.getLogger(__name__)

# Columns that may be written together with a status transition
_UPDATABLE_COLUMNS = frozenset(
    {
        "generated_code",
        "iteration_count",
        "final_accuracy",
        "lock_owner",
        "cancel_requested",
        "error_message",
    }
)


class PlanService(BaseService):
    """Service for managing transformation plans in the system database.

    Handles operations on the transformation_plans table including:
    - Plan creation and lookup
    - Compare-and-swap status transitions
    - Cancellation signals
    - History listing and status counts
    """

    def create_plan(
        self, request: TransformationRequest, risk_level: str
    ) -> TransformationPlan:
        """Persist a new plan in ``draft`` status.

        Raises:
            DatabaseError: If plan creation fails
        """
        try:
            plan_id = str(uuid4())
            now = self._now()

            sql = """
            INSERT INTO transformation_plans (
                plan_id, source_type, source_id, target_asset, target_column,
                transformation_type, description, parameters, requested_by,
                accuracy_threshold, max_iterations, iteration_count, status,
                risk_level, version, cancel_requested, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, 0, FALSE, ?, ?)
            """

            params = [
                plan_id,
                request.source_type,
                request.source_id,
                request.target_asset,
                request.target_column,
                request.transformation_type,
                request.description,
                json.dumps(request.parameters or {}),
                request.requested_by,
                float(request.accuracy_threshold),
                int(request.max_iterations),
                PlanStatus.DRAFT.value,
                risk_level,
                now,
                now,
            ]

            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to create plan: {e}") from e

        return self.require_plan(plan_id)

    def get_plan(self, plan_id: str) -> TransformationPlan | None:
        """Get a plan by ID, or None if it does not exist.

        Raises:
            DatabaseError: If query fails
        """
        try:
            result = self._system_query(
                "SELECT * FROM transformation_plans WHERE plan_id = ?", [plan_id]
            )
        except Exception as e:
            raise DatabaseError(f"Failed to get plan {plan_id}: {e}") from e

        if result.empty():
            return None
        return TransformationPlan.from_row(result.first())

    def require_plan(self, plan_id: str) -> TransformationPlan:
        """Get a plan by ID.

        Raises:
            PlanNotFoundError: If no plan has this ID
        """
        plan = self.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} does not exist")
        return plan

    def transition(
        self,
        plan_id: str,
        expected: tuple[PlanStatus, ...],
        new_status: PlanStatus,
        operation: str,
        **updates: Any,
    ) -> TransformationPlan:
        """Move a plan to ``new_status`` if it is currently in ``expected``.

        The status check and the write happen in one UPDATE statement, so two
        racing callers cannot both succeed. Extra column values in ``updates``
        are written in the same statement.

        Raises:
            PlanNotFoundError: If no plan has this ID
            InvalidStateTransitionError: If the plan is in another status or a
                concurrent writer won the race
        """
        unknown = set(updates) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update plan columns: {', '.join(sorted(unknown))}")

        assignments = ["status = ?", "version = version + 1", "updated_at = ?"]
        params: list[Any] = [new_status.value, self._now()]
        for column, value in updates.items():
            assignments.append(f"{column} = ?")
            params.append(value)

        placeholders = ", ".join("?" for _ in expected)
        sql = f"""
        UPDATE transformation_plans
        SET {", ".join(assignments)}
        WHERE plan_id = ? AND status IN ({placeholders})
        RETURNING *
        """
        params.append(plan_id)
        params.extend(status.value for status in expected)

        allowed = tuple(status.value for status in expected)
        try:
            result = self._system_query(sql, params)
        except WriteConflictError as e:
            # Enclosing transaction is aborted at this point
            logger.info(f"Lost concurrent {operation} on plan {plan_id}: {e}")
            raise InvalidStateTransitionError(
                plan_id, "changed concurrently", operation, allowed
            ) from e

        if not result.empty():
            plan = TransformationPlan.from_row(result.first())
            logger.info(
                f"Plan {plan_id} -> {new_status.value} ({operation}, "
                f"version {plan.version})"
            )
            return plan

        current = self.require_plan(plan_id)
        raise InvalidStateTransitionError(
            plan_id,
            current.status.value,
            operation,
            allowed,
        )

    def update_fields(self, plan_id: str, **updates: Any) -> None:
        """Write non-status columns of a plan.

        Raises:
            DatabaseError: If update fails
        """
        unknown = set(updates) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update plan columns: {', '.join(sorted(unknown))}")
        if not updates:
            return

        assignments = [f"{column} = ?" for column in updates]
        params = [*updates.values(), self._now(), plan_id]
        sql = f"""
        UPDATE transformation_plans
        SET {", ".join(assignments)}, updated_at = ?
        WHERE plan_id = ?
        """
        try:
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to update plan {plan_id}: {e}") from e

    def request_cancel(self, plan_id: str) -> bool:
        """Set the durable cancellation flag on an iterating plan.

        Returns:
            True if the flag was set, False if the plan is no longer iterating
        """
        try:
            result = self._system_query(
                """
                UPDATE transformation_plans
                SET cancel_requested = TRUE, updated_at = ?
                WHERE plan_id = ? AND status = ?
                RETURNING plan_id
                """,
                [self._now(), plan_id, PlanStatus.ITERATING.value],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to cancel plan {plan_id}: {e}") from e
        return not result.empty()

    def is_cancel_requested(self, plan_id: str) -> bool:
        try:
            result = self._system_query(
                "SELECT cancel_requested FROM transformation_plans WHERE plan_id = ?",
                [plan_id],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to read cancellation flag for {plan_id}: {e}"
            ) from e
        row = result.first()
        return bool(row and row["cancel_requested"])

    def list_plans(
        self,
        asset: str | None = None,
        status: PlanStatus | None = None,
        limit: int = 50,
    ) -> list[TransformationPlan]:
        """List plans, newest first, with optional filters.

        Raises:
            DatabaseError: If query fails
        """
        conditions = []
        params: list[Any] = []

        if asset:
            conditions.append("target_asset = ?")
            params.append(asset)

        if status:
            conditions.append("status = ?")
            params.append(status.value)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        sql = f"""
        SELECT * FROM transformation_plans
        {where}
        ORDER BY created_at DESC
        LIMIT ?
        """
        params.append(limit)

        try:
            result = self._system_query(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to list plans: {e}") from e
        return [TransformationPlan.from_row(row) for row in result.rows]

    def get_plan_counts_by_status(self, asset: str | None = None) -> dict[str, int]:
        """Count plans per status; every status is present in the result.

        Raises:
            DatabaseError: If query fails
        """
        sql = "SELECT status, COUNT(*) AS count FROM transformation_plans"
        params: list[Any] = []
        if asset:
            sql += " WHERE target_asset = ?"
            params.append(asset)
        sql += " GROUP BY status"

        try:
            result = self._system_query(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to count plans by status: {e}") from e

        counts = {status.value: 0 for status in PlanStatus}
        for row in result.rows:
            counts[row["status"]] = int(row["count"])
        return counts
