"""Database services for Refinery."""

from refinery.database.services.approval_service import ApprovalService
from refinery.database.services.base import BaseService
from refinery.database.services.container import ServiceContainer
from refinery.database.services.data_service import DataService
from refinery.database.services.execution_log_service import ExecutionLogService
from refinery.database.services.iteration_service import IterationService
from refinery.database.services.job_service import JobService
from refinery.database.services.plan_service import PlanService
from refinery.database.services.step_service import StepService

__all__ = [
    "ApprovalService",
    "BaseService",
    "ServiceContainer",
    "DataService",
    "ExecutionLogService",
    "IterationService",
    "JobService",
    "PlanService",
    "StepService",
]
