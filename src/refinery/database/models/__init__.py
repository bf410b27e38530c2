"""Data models persisted in the Refinery system database."""

from refinery.database.models.approval import ApprovalStatus, TransformationApproval
from refinery.database.models.execution_log import (
    ExecutionOutcome,
    TransformationExecutionLog,
)
from refinery.database.models.iteration import TransformationIteration
from refinery.database.models.plan import (
    DEFAULT_ACCURACY_THRESHOLD,
    DEFAULT_MAX_ITERATIONS,
    SOURCE_TYPES,
    PlanStatus,
    TransformationPlan,
    TransformationRequest,
)

__all__ = [
    "ApprovalStatus",
    "TransformationApproval",
    "ExecutionOutcome",
    "TransformationExecutionLog",
    "TransformationIteration",
    "DEFAULT_ACCURACY_THRESHOLD",
    "DEFAULT_MAX_ITERATIONS",
    "SOURCE_TYPES",
    "PlanStatus",
    "TransformationPlan",
    "TransformationRequest",
]
