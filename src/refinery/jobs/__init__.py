"""Refinery Jobs Module - background job management system."""

from refinery.jobs.models import Job, JobStatus, JobType

# Lazy imports for manager and executor avoid a cycle with the job service
__all__ = ["Job", "JobStatus", "JobType", "JobManager", "JobExecutor"]


def __getattr__(name: str):
    """Lazy import for JobManager and JobExecutor."""
    if name == "JobManager":
        from refinery.jobs.manager import JobManager

        return JobManager
    elif name == "JobExecutor":
        from refinery.jobs.executor import JobExecutor

        return JobExecutor
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
