"""Models for transformation requests and plans."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_ACCURACY_THRESHOLD = 0.95
DEFAULT_MAX_ITERATIONS = 5

SOURCE_TYPES = ("issue", "quality_rule", "manual", "chat", "agent")


class PlanStatus(Enum):
    """Lifecycle states of a transformation plan."""

    DRAFT = "draft"
    ITERATING = "iterating"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @staticmethod
    def from_string(status_str: str) -> "PlanStatus":
        """Convert string to PlanStatus enum.

        Raises:
            ValueError: If status string is not valid
        """
        try:
            return PlanStatus(status_str.lower())
        except ValueError as e:
            raise ValueError(f"Invalid plan status: {status_str}") from e


@dataclass
class TransformationRequest:
    """Caller input describing a desired data transformation."""

    target_asset: str
    transformation_type: str
    description: str
    requested_by: str
    source_type: str = "manual"
    source_id: str | None = None
    target_column: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    accuracy_threshold: float = DEFAULT_ACCURACY_THRESHOLD
    max_iterations: int = DEFAULT_MAX_ITERATIONS


@dataclass
class TransformationPlan:
    """Data class representing a persisted transformation plan."""

    plan_id: str
    source_type: str
    source_id: str | None
    target_asset: str
    target_column: str | None
    transformation_type: str
    description: str
    parameters: dict[str, Any]
    requested_by: str
    accuracy_threshold: float
    max_iterations: int
    generated_code: str | None
    iteration_count: int
    final_accuracy: float | None
    status: PlanStatus
    risk_level: str
    version: int
    lock_owner: str | None
    cancel_requested: bool
    error_message: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TransformationPlan":
        parameters = row.get("parameters")
        if isinstance(parameters, str):
            parameters = json.loads(parameters) if parameters else {}

        return cls(
            plan_id=row["plan_id"],
            source_type=row["source_type"],
            source_id=row.get("source_id"),
            target_asset=row["target_asset"],
            target_column=row.get("target_column"),
            transformation_type=row["transformation_type"],
            description=row["description"],
            parameters=parameters or {},
            requested_by=row["requested_by"],
            accuracy_threshold=float(row["accuracy_threshold"]),
            max_iterations=int(row["max_iterations"]),
            generated_code=row.get("generated_code"),
            iteration_count=int(row.get("iteration_count") or 0),
            final_accuracy=row.get("final_accuracy"),
            status=PlanStatus.from_string(row["status"]),
            risk_level=row["risk_level"],
            version=int(row.get("version") or 0),
            lock_owner=row.get("lock_owner"),
            cancel_requested=bool(row.get("cancel_requested")),
            error_message=row.get("error_message"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "target_asset": self.target_asset,
            "target_column": self.target_column,
            "transformation_type": self.transformation_type,
            "description": self.description,
            "parameters": self.parameters,
            "requested_by": self.requested_by,
            "accuracy_threshold": self.accuracy_threshold,
            "max_iterations": self.max_iterations,
            "generated_code": self.generated_code,
            "iteration_count": self.iteration_count,
            "final_accuracy": self.final_accuracy,
            "status": self.status.value,
            "risk_level": self.risk_level,
            "version": self.version,
            "cancel_requested": self.cancel_requested,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
