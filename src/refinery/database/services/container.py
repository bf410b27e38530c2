"""Service container for centralized database service management."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from refinery.database.manager import DatabaseManager

from refinery.database.services.approval_service import ApprovalService
from refinery.database.services.data_service import DataService
from refinery.database.services.execution_log_service import ExecutionLogService
from refinery.database.services.iteration_service import IterationService
from refinery.database.services.job_service import JobService
from refinery.database.services.plan_service import PlanService
from refinery.database.services.step_service import StepService


class ServiceContainer:
    """Central container for all Refinery database services.

    Services are initialized lazily on first access.
    """

    def __init__(self, db_manager: "DatabaseManager"):
        self.db_manager = db_manager

        self._plan_service = None
        self._iteration_service = None
        self._approval_service = None
        self._execution_log_service = None
        self._step_service = None
        self._job_service = None
        self._data_service = None

    @property
    def plans(self) -> PlanService:
        """Get the plan service."""
        if self._plan_service is None:
            self._plan_service = PlanService(self.db_manager)
        return self._plan_service

    @property
    def iterations(self) -> IterationService:
        """Get the iteration service."""
        if self._iteration_service is None:
            self._iteration_service = IterationService(self.db_manager)
        return self._iteration_service

    @property
    def approvals(self) -> ApprovalService:
        """Get the approval service."""
        if self._approval_service is None:
            self._approval_service = ApprovalService(self.db_manager)
        return self._approval_service

    @property
    def execution_logs(self) -> ExecutionLogService:
        """Get the execution log service."""
        if self._execution_log_service is None:
            self._execution_log_service = ExecutionLogService(self.db_manager)
        return self._execution_log_service

    @property
    def steps(self) -> StepService:
        """Get the workflow step service."""
        if self._step_service is None:
            self._step_service = StepService(self.db_manager)
        return self._step_service

    @property
    def jobs(self) -> JobService:
        """Get the job service."""
        if self._job_service is None:
            self._job_service = JobService(self.db_manager)
        return self._job_service

    @property
    def data(self) -> DataService:
        """Get the data service for the data database."""
        if self._data_service is None:
            self._data_service = DataService(self.db_manager)
        return self._data_service

    def transaction(self):
        """Group system database writes made through these services."""
        return self.db_manager.system_transaction()
