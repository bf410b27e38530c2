"""Tests for JobExecutor scheduling and status tracking."""

import pytest

from refinery.jobs.executor import JobExecutor
from refinery.jobs.manager import JobManager
from refinery.jobs.models import JobStatus, JobType


@pytest.fixture
def job_manager(db_manager):
    return JobManager(db_manager)


@pytest.fixture
def executor(job_manager):
    ex = JobExecutor(job_manager, max_workers=2)
    yield ex
    if ex.is_running:
        ex.stop()


def test_submit_requires_handler(executor):
    with pytest.raises(ValueError):
        executor.submit_job(JobType.ITERATE_PLAN, plan_id="plan-1")


def test_sync_handler_runs_and_completes(executor, job_manager):
    seen = []
    executor.register_handler(JobType.ITERATE_PLAN, lambda job: seen.append(job.plan_id))
    executor.start()

    job = executor.submit_job(JobType.ITERATE_PLAN, plan_id="plan-1")
    executor.wait_for_job(job.job_id)

    assert seen == ["plan-1"]
    assert job_manager.get_job(job.job_id).status == JobStatus.COMPLETED


def test_async_handler_runs_in_its_own_loop(executor, job_manager):
    seen = []

    async def handler(job):
        seen.append(job.job_id)

    executor.register_async_handler(JobType.ITERATE_PLAN, handler)
    executor.start()

    job = executor.submit_job(JobType.ITERATE_PLAN, plan_id="plan-1")
    executor.wait_for_job(job.job_id)

    assert seen == [job.job_id]
    assert job_manager.get_job(job.job_id).status == JobStatus.COMPLETED


def test_failing_handler_marks_job_failed(executor, job_manager):
    def handler(job):
        raise RuntimeError("boom")

    executor.register_handler(JobType.ITERATE_PLAN, handler)
    executor.start()

    job = executor.submit_job(JobType.ITERATE_PLAN, plan_id="plan-1")
    with pytest.raises(RuntimeError):
        executor.wait_for_job(job.job_id)

    stored = job_manager.get_job(job.job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.message == "boom"


def test_interrupted_job_resumes_under_same_id(executor, job_manager):
    seen = []
    executor.register_handler(JobType.ITERATE_PLAN, lambda job: seen.append(job.job_id))

    # A job left running by a crashed process
    job = job_manager.create_job(JobType.ITERATE_PLAN, plan_id="plan-1")
    job.start()
    job_manager.update_job(job)

    executor.start()
    executor.wait_for_job(job.job_id)

    assert seen == [job.job_id]
    assert job_manager.get_job(job.job_id).status == JobStatus.COMPLETED


def test_cancelled_job_is_skipped(executor, job_manager):
    seen = []
    executor.register_handler(JobType.ITERATE_PLAN, lambda job: seen.append(job.job_id))
    job = executor.submit_job(JobType.ITERATE_PLAN, plan_id="plan-1")
    executor.cancel_job(job.job_id)

    executor.start()
    executor.stop()

    assert seen == []
    assert job_manager.get_job(job.job_id).status == JobStatus.CANCELLED


def test_start_is_idempotent(executor, caplog):
    executor.start()

    with caplog.at_level("WARNING"):
        executor.start()

    assert executor.is_running
    assert any("already running" in rec.message for rec in caplog.records)


def test_stats_include_executor_state(executor):
    stats = executor.get_stats()

    assert stats["max_workers"] == 2
    assert stats["is_running"] is False
    assert stats["total_jobs"] == 0
