"""Model for production execution records."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ExecutionOutcome(Enum):
    """Outcome of a production execution."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class TransformationExecutionLog:
    """Data class representing the execution log of a plan.

    One row per plan. A manual re-trigger after a failure reuses the row
    and increments ``attempts``.
    """

    plan_id: str
    executed_by: str
    started_at: datetime
    completed_at: datetime | None
    outcome: ExecutionOutcome
    code: str
    iteration_number: int | None
    rows_affected: int | None
    duration_ms: int | None
    error_message: str | None
    attempts: int
    snapshot_table: str | None
    rolled_back_by: str | None
    rolled_back_at: datetime | None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TransformationExecutionLog":
        return cls(
            plan_id=row["plan_id"],
            executed_by=row["executed_by"],
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
            outcome=ExecutionOutcome(row["outcome"]),
            code=row["code"],
            iteration_number=row.get("iteration_number"),
            rows_affected=row.get("rows_affected"),
            duration_ms=row.get("duration_ms"),
            error_message=row.get("error_message"),
            attempts=int(row.get("attempts") or 1),
            snapshot_table=row.get("snapshot_table"),
            rolled_back_by=row.get("rolled_back_by"),
            rolled_back_at=row.get("rolled_back_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "plan_id": self.plan_id,
            "executed_by": self.executed_by,
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "outcome": self.outcome.value,
            "code": self.code,
            "iteration_number": self.iteration_number,
            "rows_affected": self.rows_affected,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "snapshot_table": self.snapshot_table,
            "rolled_back_by": self.rolled_back_by,
            "rolled_back_at": iso(self.rolled_back_at),
        }
