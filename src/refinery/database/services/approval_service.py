"""Approval service for human review records."""

from refinery.database.base import DatabaseError
from refinery.database.models.approval import ApprovalStatus, TransformationApproval
from refinery.database.services.base import BaseService


class ApprovalService(BaseService):
    """Service for the transformation_approvals table (one row per plan)."""

    def create_pending(self, plan_id: str) -> bool:
        """Open a pending approval request.

        Returns:
            True if a new request was recorded, False if one already existed
        """
        if self.get_approval(plan_id) is not None:
            return False

        try:
            self._system_execute(
                """
                INSERT INTO transformation_approvals (plan_id, status, requested_at)
                VALUES (?, ?, ?)
                ON CONFLICT (plan_id) DO NOTHING
                """,
                [plan_id, ApprovalStatus.PENDING.value, self._now()],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to request approval for plan {plan_id}: {e}"
            ) from e
        return True

    def record_decision(
        self,
        plan_id: str,
        status: ApprovalStatus,
        reviewed_by: str,
        comment: str | None,
    ) -> TransformationApproval:
        """Record an approve/reject decision, creating the row if needed."""
        now = self._now()
        try:
            self._system_execute(
                """
                INSERT INTO transformation_approvals (
                    plan_id, status, reviewed_by, comment, requested_at, reviewed_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (plan_id) DO UPDATE SET
                    status = excluded.status,
                    reviewed_by = excluded.reviewed_by,
                    comment = excluded.comment,
                    reviewed_at = excluded.reviewed_at
                """,
                [plan_id, status.value, reviewed_by, comment, now, now],
            )
        except Exception as e:
            raise DatabaseError(
                f"Failed to record {status.value} decision for plan {plan_id}: {e}"
            ) from e
        return self.get_approval(plan_id)

    def get_approval(self, plan_id: str) -> TransformationApproval | None:
        try:
            result = self._system_query(
                "SELECT * FROM transformation_approvals WHERE plan_id = ?", [plan_id]
            )
        except Exception as e:
            raise DatabaseError(f"Failed to get approval for plan {plan_id}: {e}") from e
        if result.empty():
            return None
        return TransformationApproval.from_row(result.first())
