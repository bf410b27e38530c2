"""Model for one attempt of the convergence loop."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


def _load_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


@dataclass
class TransformationIteration:
    """Data class representing a persisted iteration.

    Iterations are append-only: one row per (plan_id, iteration_number),
    written once and never updated. ``accuracy`` is None only for plans
    whose transformation type skips evaluation.
    """

    plan_id: str
    iteration_number: int
    code: str
    success: bool
    meets_threshold: bool
    accuracy: float | None
    execution_time_ms: int = 0
    sample_size: int = 0
    output: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    evaluation_notes: str = ""
    issues_found: list[str] = field(default_factory=list)
    improvements_suggested: list[str] = field(default_factory=list)
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TransformationIteration":
        return cls(
            plan_id=row["plan_id"],
            iteration_number=int(row["iteration_number"]),
            code=row["code"],
            success=bool(row["success"]),
            meets_threshold=bool(row["meets_threshold"]),
            accuracy=row.get("accuracy"),
            execution_time_ms=int(row.get("execution_time_ms") or 0),
            sample_size=int(row.get("sample_size") or 0),
            output=_load_json(row.get("output"), {}),
            error_message=row.get("error_message"),
            evaluation_notes=row.get("evaluation_notes") or "",
            issues_found=_load_json(row.get("issues_found"), []),
            improvements_suggested=_load_json(row.get("improvements_suggested"), []),
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "iteration_number": self.iteration_number,
            "code": self.code,
            "success": self.success,
            "meets_threshold": self.meets_threshold,
            "accuracy": self.accuracy,
            "execution_time_ms": self.execution_time_ms,
            "sample_size": self.sample_size,
            "output": self.output,
            "error_message": self.error_message,
            "evaluation_notes": self.evaluation_notes,
            "issues_found": self.issues_found,
            "improvements_suggested": self.improvements_suggested,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
