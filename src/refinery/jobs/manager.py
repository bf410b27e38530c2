"""Job management for Refinery using the service layer."""

import logging
from typing import Any

from ..database.services.job_service import JobService
from .models import Job, JobStatus, JobType

logger = logging.getLogger(__name__)


class JobManager:
    """Manages job lifecycle using the service layer."""

    def __init__(self, db_manager):
        """Initialize JobManager.

        Args:
            db_manager: DatabaseManager instance for persistence
        """
        self.db_manager = db_manager
        self.job_service = JobService(db_manager)

    def create_job(
        self,
        job_type: JobType,
        plan_id: str | None = None,
        message: str = "",
    ) -> Job:
        """Create a new job and persist it.

        Raises:
            DatabaseError: If job creation fails
        """
        job = Job.create(job_type, plan_id, message)
        self.job_service.create_job(job)
        logger.info(f"Created job {job.job_id}: {message or job_type.value}")
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self.job_service.get_job_by_id(job_id)

    def list_jobs(self, limit: int = 100, active_only: bool = False) -> list[Job]:
        return self.job_service.list_jobs(limit, active_only)

    def update_job(self, job: Job) -> None:
        self.job_service.update_job(job)

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a job by ID.

        Returns:
            True if job was cancelled, False if not found or already finished

        Raises:
            DatabaseError: If operation fails
        """
        job = self.job_service.get_job_by_id(job_id)
        if not job or not job.is_active:
            return False

        job.cancel()
        self.job_service.update_job(job)
        logger.info(f"Cancelled job {job_id}")
        return True

    def get_pending_jobs(self) -> list[Job]:
        """Pending jobs, oldest first."""
        return self.job_service.get_jobs_by_status(JobStatus.PENDING)

    def get_jobs_for_plan(self, plan_id: str) -> list[Job]:
        return self.job_service.get_jobs_by_plan_id(plan_id)

    def get_active_job_for_plan(self, plan_id: str) -> Job | None:
        """The pending or running job working on a plan, if any."""
        for job in self.job_service.get_jobs_by_plan_id(plan_id):
            if job.is_active:
                return job
        return None

    def requeue_interrupted_jobs(self) -> list[Job]:
        """Return jobs left running by a previous process to the queue.

        Their handlers run again under the same job id, so a workflow that
        uses the job id as its run id resumes instead of starting over.
        """
        requeued = []
        for job in self.job_service.get_jobs_by_status(JobStatus.RUNNING):
            job.requeue()
            self.job_service.update_job(job)
            requeued.append(job)
            logger.info(f"Re-queued interrupted job {job.job_id}")
        return requeued

    def get_job_statistics(self) -> dict[str, Any]:
        """Get job statistics and counts."""
        status_counts = self.job_service.get_job_counts_by_status()
        return {
            "total_jobs": sum(status_counts.values()),
            "pending_jobs": status_counts.get(JobStatus.PENDING.value, 0),
            "running_jobs": status_counts.get(JobStatus.RUNNING.value, 0),
            "completed_jobs": status_counts.get(JobStatus.COMPLETED.value, 0),
            "failed_jobs": status_counts.get(JobStatus.FAILED.value, 0),
            "cancelled_jobs": status_counts.get(JobStatus.CANCELLED.value, 0),
        }
