"""Model for the human approval record of a plan."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class TransformationApproval:
    """At most one approval record exists per plan."""

    plan_id: str
    status: ApprovalStatus
    reviewed_by: str | None
    comment: str | None
    requested_at: datetime | None
    reviewed_at: datetime | None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TransformationApproval":
        return cls(
            plan_id=row["plan_id"],
            status=ApprovalStatus(row["status"]),
            reviewed_by=row.get("reviewed_by"),
            comment=row.get("comment"),
            requested_at=row.get("requested_at"),
            reviewed_at=row.get("reviewed_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "status": self.status.value,
            "reviewed_by": self.reviewed_by,
            "comment": self.comment,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }
