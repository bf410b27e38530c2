"""Job service for persisting background jobs."""

from refinery.database.base import DatabaseError
from refinery.database.services.base import BaseService
from refinery.jobs.models import Job, JobStatus


class JobService(BaseService):
    """Service for managing jobs in the system database.

    Handles operations on the jobs table including:
    - Job creation and updates
    - Status tracking
    - Lookups by plan and by status
    """

    def create_job(self, job: Job) -> None:
        """Create a new job in the database.

        Raises:
            DatabaseError: If job creation fails
        """
        try:
            sql = """
            INSERT INTO jobs (
                job_id, plan_id, type, status, message, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """
            params = [
                job.job_id,
                job.plan_id,
                job.type.value,
                job.status.value,
                job.message,
                job.created_at,
                job.updated_at,
            ]
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to create job {job.job_id}: {e}") from e

    def get_job_by_id(self, job_id: str) -> Job | None:
        """Get a job by its ID.

        Raises:
            DatabaseError: If query execution fails
        """
        try:
            result = self._system_query("SELECT * FROM jobs WHERE job_id = ?", [job_id])
        except Exception as e:
            raise DatabaseError(f"Failed to get job by id {job_id}: {e}") from e

        if result.empty():
            return None
        return Job.from_dict(result.first())

    def update_job(self, job: Job) -> None:
        """Persist status, message and timestamps of an existing job.

        Raises:
            DatabaseError: If job update fails
        """
        try:
            sql = """
            UPDATE jobs SET status = ?, message = ?, updated_at = ?
            WHERE job_id = ?
            """
            params = [job.status.value, job.message, job.updated_at, job.job_id]
            self._system_execute(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to update job {job.job_id}: {e}") from e

    def list_jobs(self, limit: int = 100, active_only: bool = False) -> list[Job]:
        """List jobs ordered by creation date (newest first)."""
        try:
            if active_only:
                sql = """
                SELECT * FROM jobs
                WHERE status IN (?, ?)
                ORDER BY created_at DESC
                LIMIT ?
                """
                params = [JobStatus.PENDING.value, JobStatus.RUNNING.value, limit]
            else:
                sql = "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?"
                params = [limit]

            result = self._system_query(sql, params)
        except Exception as e:
            raise DatabaseError(f"Failed to list jobs: {e}") from e
        return [Job.from_dict(row) for row in result.rows]

    def get_jobs_by_status(self, status: JobStatus) -> list[Job]:
        """Get all jobs with a specific status, oldest first."""
        try:
            result = self._system_query(
                "SELECT * FROM jobs WHERE status = ? ORDER BY created_at",
                [status.value],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to get jobs by status {status}: {e}") from e
        return [Job.from_dict(row) for row in result.rows]

    def get_jobs_by_plan_id(self, plan_id: str) -> list[Job]:
        """Get all jobs for a plan, newest first."""
        try:
            result = self._system_query(
                "SELECT * FROM jobs WHERE plan_id = ? ORDER BY created_at DESC",
                [plan_id],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to get jobs for plan {plan_id}: {e}") from e
        return [Job.from_dict(row) for row in result.rows]

    def get_job_counts_by_status(self) -> dict[str, int]:
        """Get count of jobs by status; every status is present."""
        try:
            result = self._system_query(
                "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
            )
        except Exception as e:
            raise DatabaseError(f"Failed to get job counts by status: {e}") from e

        counts = {status.value: 0 for status in JobStatus}
        for row in result.rows:
            counts[row["status"]] = int(row["count"])
        return counts
