"""Tests for JobManager persistence and recovery."""

import pytest

from refinery.jobs.manager import JobManager
from refinery.jobs.models import Job, JobStatus, JobType


@pytest.fixture
def job_manager(db_manager):
    return JobManager(db_manager)


def test_create_and_get_job(job_manager):
    job = job_manager.create_job(JobType.ITERATE_PLAN, plan_id="plan-1", message="Iterate")

    stored = job_manager.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.plan_id == "plan-1"
    assert stored.type == JobType.ITERATE_PLAN
    assert job_manager.get_job("missing") is None


def test_cancel_job_only_when_active(job_manager):
    job = job_manager.create_job(JobType.ITERATE_PLAN, plan_id="plan-1")

    assert job_manager.cancel_job(job.job_id) is True
    assert job_manager.get_job(job.job_id).status == JobStatus.CANCELLED
    assert job_manager.cancel_job(job.job_id) is False
    assert job_manager.cancel_job("missing") is False


def test_active_job_for_plan(job_manager):
    assert job_manager.get_active_job_for_plan("plan-1") is None

    done = job_manager.create_job(JobType.ITERATE_PLAN, plan_id="plan-1")
    job_manager.cancel_job(done.job_id)
    active = job_manager.create_job(JobType.ITERATE_PLAN, plan_id="plan-1")

    assert job_manager.get_active_job_for_plan("plan-1").job_id == active.job_id
    assert len(job_manager.get_jobs_for_plan("plan-1")) == 2


def test_interrupted_jobs_are_requeued(job_manager):
    job = job_manager.create_job(JobType.ITERATE_PLAN, plan_id="plan-1")
    job.start()
    job_manager.update_job(job)

    requeued = job_manager.requeue_interrupted_jobs()

    assert [j.job_id for j in requeued] == [job.job_id]
    assert job_manager.get_job(job.job_id).status == JobStatus.PENDING
    assert [j.job_id for j in job_manager.get_pending_jobs()] == [job.job_id]


def test_statistics(job_manager):
    job_manager.create_job(JobType.ITERATE_PLAN, plan_id="plan-1")
    cancelled = job_manager.create_job(JobType.ITERATE_PLAN, plan_id="plan-2")
    job_manager.cancel_job(cancelled.job_id)

    stats = job_manager.get_job_statistics()

    assert stats["total_jobs"] == 2
    assert stats["pending_jobs"] == 1
    assert stats["cancelled_jobs"] == 1
    assert len(job_manager.list_jobs(active_only=True)) == 1


def test_job_state_machine():
    job = Job.create(JobType.ITERATE_PLAN, plan_id="plan-1")

    with pytest.raises(ValueError):
        job.complete()
    job.start()
    with pytest.raises(ValueError):
        job.start()
    job.complete()
    assert job.is_finished
    with pytest.raises(ValueError):
        job.cancel()


def test_job_round_trips_through_dict():
    job = Job.create(JobType.ITERATE_PLAN, plan_id="plan-1", message="hi")

    assert Job.from_dict(job.to_dict()) == job
