"""Tests for PlanLifecycleManager: validation, review, execution and rollback."""

import asyncio

import pytest

from refinery.database.base import DatabaseError
from refinery.database.models.approval import ApprovalStatus
from refinery.database.models.execution_log import ExecutionOutcome
from refinery.database.models.plan import PlanStatus
from refinery.engine.lifecycle import (
    PlanLifecycleManager,
    inline_run_id,
    snapshot_name_for,
)
from refinery.error_handling import (
    InfrastructureError,
    InvalidStateTransitionError,
    MissingReasonError,
    MissingReviewerError,
    PlanNotFoundError,
    StaleCodeError,
    ValidationError,
)
from refinery.jobs.executor import JobExecutor
from refinery.jobs.manager import JobManager
from refinery.jobs.models import JobStatus
from refinery.sandbox.executor import SandboxExecutor, SandboxResult


def _names(services):
    rows = services.data.read_all_rows("customers")
    return [row["name"] for row in sorted(rows, key=lambda row: row["id"])]


@pytest.fixture
def pending_plan(lifecycle, evaluator, make_request, make_evaluation):
    async def factory(**overrides):
        evaluator.evaluate.return_value = make_evaluation(0.99)
        return await lifecycle.create_plan(make_request(**overrides))

    return factory


@pytest.fixture
def approved_plan(lifecycle, pending_plan):
    async def factory(**overrides):
        plan = await pending_plan(**overrides)
        return lifecycle.approve(plan.plan_id, "rui")

    return factory


@pytest.fixture
def uppercased_rows():
    return SandboxResult(
        success=True,
        output={"stats": {"total": 3}},
        rows=[
            {"id": 1, "name": "ALICE", "email": "ALICE@EXAMPLE.COM", "signup_date": "2024-01-05"},
            {"id": 2, "name": "BOB", "email": "Bob@Example.com", "signup_date": "2024-02-11"},
            {"id": 3, "name": "CAROL", "email": None, "signup_date": "2024-03-20"},
        ],
        execution_time_ms=20,
    )


# Creation and validation


@pytest.mark.parametrize(
    "overrides",
    [
        {"description": "   "},
        {"requested_by": ""},
        {"target_asset": "customers; DROP TABLE customers"},
        {"target_column": "name-with-dash"},
        {"transformation_type": "teleportation"},
        {"source_type": "email"},
        {"accuracy_threshold": 1.5},
        {"accuracy_threshold": True},
        {"max_iterations": 0},
        {"max_iterations": 2.5},
        {"parameters": ["not", "a", "mapping"]},
    ],
)
@pytest.mark.asyncio
async def test_invalid_request_is_rejected_without_persisting(
    lifecycle, services, make_request, overrides
):
    with pytest.raises(ValidationError):
        await lifecycle.create_plan(make_request(**overrides))

    assert services.plans.list_plans() == []


@pytest.mark.asyncio
async def test_request_fields_are_normalized(lifecycle, make_request, evaluator, make_evaluation):
    evaluator.evaluate.return_value = make_evaluation(0.99)

    plan = await lifecycle.create_plan(
        make_request(
            description="  Uppercase names  ",
            target_column=" name ",
            accuracy_threshold=1,
            parameters={"case": "upper"},
        )
    )

    assert plan.description == "Uppercase names"
    assert plan.target_column == "name"
    assert plan.accuracy_threshold == 1.0
    assert plan.parameters == {"case": "upper"}
    assert plan.risk_level == "low"


@pytest.mark.asyncio
async def test_create_without_executor_iterates_inline(pending_plan):
    plan = await pending_plan()

    assert plan.status == PlanStatus.PENDING_APPROVAL
    assert plan.iteration_count == 1
    assert plan.lock_owner == inline_run_id(plan.plan_id)


@pytest.mark.asyncio
async def test_create_returns_failed_plan_on_oracle_outage(
    lifecycle, make_request, synthesizer
):
    synthesizer.synthesize.side_effect = InfrastructureError("connection refused")

    plan = await lifecycle.create_plan(make_request())

    assert plan.status == PlanStatus.FAILED
    assert "connection refused" in plan.error_message


@pytest.fixture
def job_executor(db_manager):
    executor = JobExecutor(JobManager(db_manager), max_workers=2)
    yield executor
    executor.stop()


@pytest.mark.asyncio
async def test_create_with_executor_queues_iteration(
    services, policy, engine, sandbox, job_executor, make_request
):
    lifecycle = PlanLifecycleManager(
        services, policy, engine, sandbox, job_executor=job_executor
    )

    plan = await lifecycle.create_plan(make_request())

    assert plan.status == PlanStatus.DRAFT
    job = job_executor.job_manager.get_active_job_for_plan(plan.plan_id)
    assert job is not None
    assert job.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_skip_iteration_type_runs_inline_even_with_executor(
    services, policy, engine, sandbox, job_executor, make_request
):
    lifecycle = PlanLifecycleManager(
        services, policy, engine, sandbox, job_executor=job_executor
    )

    plan = await lifecycle.create_plan(make_request(transformation_type="null_remediation"))

    assert plan.status == PlanStatus.PENDING_APPROVAL
    assert job_executor.job_manager.get_jobs_for_plan(plan.plan_id) == []


@pytest.mark.asyncio
async def test_queued_iteration_is_run_by_the_worker(
    services, policy, engine, sandbox, job_executor, make_request, evaluator, make_evaluation
):
    evaluator.evaluate.return_value = make_evaluation(0.99)
    lifecycle = PlanLifecycleManager(
        services, policy, engine, sandbox, job_executor=job_executor
    )
    plan = await lifecycle.create_plan(make_request())
    job = job_executor.job_manager.get_active_job_for_plan(plan.plan_id)

    job_executor.start()
    job_executor.wait_for_job(job.job_id, timeout=30)

    finished = services.plans.require_plan(plan.plan_id)
    assert finished.status == PlanStatus.PENDING_APPROVAL
    assert finished.lock_owner == job.job_id
    assert job_executor.job_manager.get_job(job.job_id).status == JobStatus.COMPLETED


def test_get_plan_unknown_id(lifecycle):
    with pytest.raises(PlanNotFoundError):
        lifecycle.get_plan("no-such-plan")


# Review


@pytest.mark.asyncio
async def test_request_approval_is_idempotent(lifecycle, services, pending_plan):
    plan = await pending_plan()

    lifecycle.request_approval(plan.plan_id)
    first = services.approvals.get_approval(plan.plan_id)
    lifecycle.request_approval(plan.plan_id)
    second = services.approvals.get_approval(plan.plan_id)

    assert first.status == ApprovalStatus.PENDING
    assert second.requested_at == first.requested_at


@pytest.mark.asyncio
async def test_request_approval_requires_pending_plan(lifecycle, services, make_request):
    plan = services.plans.create_plan(make_request(), "low")

    with pytest.raises(InvalidStateTransitionError):
        lifecycle.request_approval(plan.plan_id)


@pytest.mark.asyncio
async def test_approve_records_reviewer(lifecycle, services, pending_plan):
    plan = await pending_plan()
    lifecycle.request_approval(plan.plan_id)

    approved = lifecycle.approve(plan.plan_id, " rui ", "looks right")

    assert approved.status == PlanStatus.APPROVED
    approval = services.approvals.get_approval(plan.plan_id)
    assert approval.status == ApprovalStatus.APPROVED
    assert approval.reviewed_by == "rui"
    assert approval.comment == "looks right"
    assert approval.reviewed_at is not None


@pytest.mark.parametrize("reviewer", [None, "", "   "])
@pytest.mark.asyncio
async def test_approve_without_reviewer_leaves_plan_pending(
    lifecycle, services, pending_plan, reviewer
):
    plan = await pending_plan()

    with pytest.raises(MissingReviewerError):
        lifecycle.approve(plan.plan_id, reviewer)

    assert services.plans.require_plan(plan.plan_id).status == PlanStatus.PENDING_APPROVAL
    assert services.approvals.get_approval(plan.plan_id) is None


@pytest.mark.asyncio
async def test_reject_requires_reason(lifecycle, services, pending_plan):
    plan = await pending_plan()

    with pytest.raises(MissingReasonError):
        lifecycle.reject(plan.plan_id, "rui", "  ")
    with pytest.raises(MissingReviewerError):
        lifecycle.reject(plan.plan_id, None, "wrong column")

    assert services.plans.require_plan(plan.plan_id).status == PlanStatus.PENDING_APPROVAL


@pytest.mark.asyncio
async def test_rejected_plan_cannot_be_executed(lifecycle, services, pending_plan):
    plan = await pending_plan()

    rejected = lifecycle.reject(plan.plan_id, "rui", "wrong column")

    assert rejected.status == PlanStatus.REJECTED
    assert services.approvals.get_approval(plan.plan_id).comment == "wrong column"
    with pytest.raises(InvalidStateTransitionError):
        await lifecycle.execute(plan.plan_id, "ops")
    with pytest.raises(InvalidStateTransitionError):
        lifecycle.approve(plan.plan_id, "rui")


@pytest.mark.asyncio
async def test_only_first_decision_wins(lifecycle, services, pending_plan):
    plan = await pending_plan()

    lifecycle.approve(plan.plan_id, "rui")
    with pytest.raises(InvalidStateTransitionError) as exc_info:
        lifecycle.reject(plan.plan_id, "sam", "too risky")

    assert exc_info.value.current_status == "approved"
    approval = services.approvals.get_approval(plan.plan_id)
    assert approval.status == ApprovalStatus.APPROVED
    assert approval.reviewed_by == "rui"


@pytest.mark.asyncio
async def test_failed_plan_cannot_be_approved(lifecycle, make_request):
    plan = await lifecycle.create_plan(make_request(max_iterations=1))
    assert plan.status == PlanStatus.FAILED

    with pytest.raises(InvalidStateTransitionError):
        lifecycle.approve(plan.plan_id, "rui")


# Execution and rollback


@pytest.mark.asyncio
async def test_execute_requires_operator(lifecycle, approved_plan):
    plan = await approved_plan()

    with pytest.raises(ValidationError):
        await lifecycle.execute(plan.plan_id, "  ")


@pytest.mark.asyncio
async def test_execute_requires_approval(lifecycle, pending_plan):
    plan = await pending_plan()

    with pytest.raises(InvalidStateTransitionError):
        await lifecycle.execute(plan.plan_id, "ops")


@pytest.mark.asyncio
async def test_execute_rejects_code_changed_after_evaluation(
    lifecycle, services, approved_plan
):
    plan = await approved_plan()
    services.plans.update_fields(plan.plan_id, generated_code="def transform(data): return []")

    with pytest.raises(StaleCodeError):
        await lifecycle.execute(plan.plan_id, "ops")

    assert services.plans.require_plan(plan.plan_id).status == PlanStatus.APPROVED
    assert _names(services) == ["alice", "bob", "carol"]


@pytest.mark.asyncio
async def test_execute_writes_rows_and_logs_success(
    lifecycle, services, approved_plan, sandbox, uppercased_rows
):
    plan = await approved_plan()
    sandbox.execute.return_value = uppercased_rows

    completed = await lifecycle.execute(plan.plan_id, "ops")

    assert completed.status == PlanStatus.COMPLETED
    assert completed.error_message is None
    assert _names(services) == ["ALICE", "BOB", "CAROL"]

    # Production runs get every row, not just the sample
    rows_sent = sandbox.execute.await_args.args[1]
    assert len(rows_sent) == 3

    log = services.execution_logs.get_log(plan.plan_id)
    assert log.outcome == ExecutionOutcome.SUCCESS
    assert log.executed_by == "ops"
    assert log.rows_affected == 3
    assert log.attempts == 1
    assert log.iteration_number == 1
    assert log.snapshot_table == snapshot_name_for(plan.plan_id)


@pytest.mark.asyncio
async def test_failed_execution_leaves_table_and_returns_to_approved(
    lifecycle, services, approved_plan, sandbox, make_result, uppercased_rows
):
    plan = await approved_plan()
    sandbox.execute.return_value = make_result(success=False, error="KeyError: 'name'")

    result = await lifecycle.execute(plan.plan_id, "ops")

    assert result.status == PlanStatus.APPROVED
    assert "KeyError" in result.error_message
    assert _names(services) == ["alice", "bob", "carol"]
    log = services.execution_logs.get_log(plan.plan_id)
    assert log.outcome == ExecutionOutcome.FAILED
    assert log.error_message == "KeyError: 'name'"

    # A manual re-trigger reuses the log row
    sandbox.execute.return_value = uppercased_rows
    retried = await lifecycle.execute(plan.plan_id, "ops")

    assert retried.status == PlanStatus.COMPLETED
    assert retried.error_message is None
    log = services.execution_logs.get_log(plan.plan_id)
    assert log.outcome == ExecutionOutcome.SUCCESS
    assert log.attempts == 2
    assert log.error_message is None


@pytest.mark.asyncio
async def test_completed_plan_cannot_execute_twice(
    lifecycle, approved_plan, sandbox, uppercased_rows
):
    plan = await approved_plan()
    sandbox.execute.return_value = uppercased_rows
    await lifecycle.execute(plan.plan_id, "ops")

    with pytest.raises(InvalidStateTransitionError):
        await lifecycle.execute(plan.plan_id, "ops")


@pytest.mark.asyncio
async def test_failure_that_cannot_be_logged_still_returns_to_approved(
    lifecycle, services, approved_plan, sandbox, make_result, monkeypatch
):
    plan = await approved_plan()
    sandbox.execute.return_value = make_result(success=False, error="KeyError: 'name'")

    def log_unavailable(*args, **kwargs):
        raise DatabaseError("system database is read-only")

    monkeypatch.setattr(services.execution_logs, "fail_execution", log_unavailable)

    result = await lifecycle.execute(plan.plan_id, "ops")

    assert result.status == PlanStatus.APPROVED
    assert result.error_message == "KeyError: 'name'"


@pytest.mark.parametrize(
    "interruption", [RuntimeError("sandbox crashed"), asyncio.CancelledError()]
)
@pytest.mark.asyncio
async def test_interrupted_execution_returns_to_approved_and_reraises(
    lifecycle, services, approved_plan, sandbox, interruption
):
    plan = await approved_plan()
    sandbox.execute.side_effect = interruption

    with pytest.raises(type(interruption)):
        await lifecycle.execute(plan.plan_id, "ops")

    reverted = services.plans.require_plan(plan.plan_id)
    assert reverted.status == PlanStatus.APPROVED
    assert "interrupted" in reverted.error_message
    assert _names(services) == ["alice", "bob", "carol"]
    assert services.execution_logs.get_log(plan.plan_id).outcome == ExecutionOutcome.FAILED


@pytest.mark.asyncio
async def test_failure_after_write_restores_the_snapshot(
    lifecycle, services, approved_plan, sandbox, uppercased_rows, monkeypatch
):
    plan = await approved_plan()
    sandbox.execute.return_value = uppercased_rows

    def log_unavailable(*args, **kwargs):
        raise DatabaseError("disk full")

    monkeypatch.setattr(services.execution_logs, "complete_execution", log_unavailable)

    result = await lifecycle.execute(plan.plan_id, "ops")

    assert result.status == PlanStatus.APPROVED
    assert "disk full" in result.error_message
    assert _names(services) == ["alice", "bob", "carol"]


@pytest.mark.asyncio
async def test_execution_stranded_by_a_dead_process_is_recovered(
    lifecycle, services, approved_plan, uppercased_rows
):
    plan = await approved_plan()
    iteration = services.iterations.get_satisfying_iteration(plan.plan_id)

    # The process died after writing rows but before completing the plan
    services.plans.transition(
        plan.plan_id, (PlanStatus.APPROVED,), PlanStatus.EXECUTING, "execute"
    )
    services.execution_logs.start_execution(
        plan.plan_id, "ops", iteration.code, iteration.iteration_number
    )
    snapshot = services.data.snapshot_table("customers", snapshot_name_for(plan.plan_id))
    services.execution_logs.record_snapshot(plan.plan_id, snapshot)
    services.data.replace_rows("customers", uppercased_rows.rows)

    recovered = lifecycle.recover_interrupted_executions()

    assert [p.plan_id for p in recovered] == [plan.plan_id]
    assert recovered[0].status == PlanStatus.APPROVED
    assert _names(services) == ["alice", "bob", "carol"]
    assert services.execution_logs.get_log(plan.plan_id).outcome == ExecutionOutcome.FAILED
    assert lifecycle.recover_interrupted_executions() == []


@pytest.mark.asyncio
async def test_rollback_restores_pre_execution_rows(
    lifecycle, services, approved_plan, sandbox, uppercased_rows
):
    plan = await approved_plan()
    sandbox.execute.return_value = uppercased_rows
    await lifecycle.execute(plan.plan_id, "ops")

    rolled_back = lifecycle.rollback(plan.plan_id, "ops-lead")

    assert rolled_back.status == PlanStatus.COMPLETED
    assert _names(services) == ["alice", "bob", "carol"]
    log = services.execution_logs.get_log(plan.plan_id)
    assert log.outcome == ExecutionOutcome.ROLLED_BACK
    assert log.rolled_back_by == "ops-lead"

    with pytest.raises(InvalidStateTransitionError):
        lifecycle.rollback(plan.plan_id, "ops-lead")


@pytest.mark.asyncio
async def test_rollback_requires_completed_plan(lifecycle, approved_plan):
    plan = await approved_plan()

    with pytest.raises(InvalidStateTransitionError):
        lifecycle.rollback(plan.plan_id, "ops")
    with pytest.raises(ValidationError):
        lifecycle.rollback(plan.plan_id, None)


@pytest.mark.asyncio
async def test_end_to_end_with_real_sandbox(
    services, policy, engine, evaluator, make_request, make_evaluation
):
    lifecycle = PlanLifecycleManager(
        services, policy, engine, SandboxExecutor(timeout_seconds=30)
    )
    evaluator.evaluate.return_value = make_evaluation(0.99)
    plan = await lifecycle.create_plan(make_request())
    lifecycle.approve(plan.plan_id, "rui")

    completed = await lifecycle.execute(plan.plan_id, "ops")

    assert completed.status == PlanStatus.COMPLETED, completed.error_message
    assert _names(services) == ["ALICE", "BOB", "CAROL"]
    emails = [row["email"] for row in services.data.read_all_rows("customers")]
    assert None in emails

    lifecycle.rollback(plan.plan_id, "ops")
    assert _names(services) == ["alice", "bob", "carol"]


# Cancellation


@pytest.mark.asyncio
async def test_cancel_draft_cancels_plan_and_pending_job(
    services, policy, engine, sandbox, job_executor, make_request
):
    lifecycle = PlanLifecycleManager(
        services, policy, engine, sandbox, job_executor=job_executor
    )
    plan = await lifecycle.create_plan(make_request())
    job = job_executor.job_manager.get_active_job_for_plan(plan.plan_id)

    cancelled = lifecycle.cancel(plan.plan_id)

    assert cancelled.status == PlanStatus.CANCELLED
    assert job_executor.job_manager.get_job(job.job_id).status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_iterating_plan_sets_flag_for_running_workflow(
    lifecycle, services, engine, make_request, synthesizer
):
    plan = services.plans.create_plan(make_request(), "low")
    services.plans.transition(
        plan.plan_id,
        (PlanStatus.DRAFT,),
        PlanStatus.ITERATING,
        "start iteration",
        lock_owner="run-1",
    )

    flagged = lifecycle.cancel(plan.plan_id)

    assert flagged.status == PlanStatus.ITERATING
    assert flagged.cancel_requested is True

    # The owning run observes the flag before doing any work
    result = await engine.run(plan.plan_id, run_id="run-1")
    assert result.status == PlanStatus.CANCELLED
    synthesizer.synthesize.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_after_iteration_is_rejected(lifecycle, pending_plan):
    plan = await pending_plan()

    with pytest.raises(InvalidStateTransitionError):
        lifecycle.cancel(plan.plan_id)


def _orphan(services, make_request):
    """A plan left iterating by an inline run whose process is gone."""
    plan = services.plans.create_plan(make_request(), "low")
    services.plans.transition(
        plan.plan_id,
        (PlanStatus.DRAFT,),
        PlanStatus.ITERATING,
        "start iteration",
        lock_owner="inline-dead",
    )
    return plan


@pytest.mark.asyncio
async def test_cancel_then_resume_finishes_orphaned_plan(
    lifecycle, services, make_request, synthesizer
):
    plan = _orphan(services, make_request)

    lifecycle.cancel(plan.plan_id)
    resumed = await lifecycle.resume(plan.plan_id)

    assert resumed.status == PlanStatus.CANCELLED
    synthesizer.synthesize.assert_not_awaited()


@pytest.mark.asyncio
async def test_resume_completes_orphaned_iteration(
    lifecycle, services, make_request, evaluator, make_evaluation
):
    evaluator.evaluate.return_value = make_evaluation(0.99)
    plan = _orphan(services, make_request)

    resumed = await lifecycle.resume(plan.plan_id)

    assert resumed.status == PlanStatus.PENDING_APPROVAL
    assert resumed.lock_owner == "inline-dead"
    assert resumed.iteration_count == 1


@pytest.mark.asyncio
async def test_resume_leaves_job_owned_plans_to_the_worker(
    services, policy, engine, sandbox, job_executor, make_request
):
    lifecycle = PlanLifecycleManager(
        services, policy, engine, sandbox, job_executor=job_executor
    )
    plan = await lifecycle.create_plan(make_request())

    with pytest.raises(InvalidStateTransitionError):
        await lifecycle.resume(plan.plan_id)

    assert services.plans.require_plan(plan.plan_id).status == PlanStatus.DRAFT


@pytest.mark.asyncio
async def test_resume_rejects_finished_plan(lifecycle, pending_plan):
    plan = await pending_plan()

    with pytest.raises(InvalidStateTransitionError):
        await lifecycle.resume(plan.plan_id)


@pytest.mark.asyncio
async def test_cancel_racing_the_finish_is_rejected(
    lifecycle, services, pending_plan, monkeypatch
):
    plan = await pending_plan()
    read_plan = services.plans.require_plan
    reads = []

    def require_plan(plan_id):
        current = read_plan(plan_id)
        if not reads:
            # The first read happens while the run is still iterating
            current.status = PlanStatus.ITERATING
        reads.append(plan_id)
        return current

    monkeypatch.setattr(services.plans, "require_plan", require_plan)

    with pytest.raises(InvalidStateTransitionError):
        lifecycle.cancel(plan.plan_id)

    assert services.plans.is_cancel_requested(plan.plan_id) is False


# Preview and history


@pytest.mark.asyncio
async def test_preview_shows_diff_risk_and_iterations(lifecycle, pending_plan):
    plan = await pending_plan()
    lifecycle.request_approval(plan.plan_id)

    preview = lifecycle.get_preview(plan.plan_id)

    assert preview["plan"].plan_id == plan.plan_id
    assert len(preview["iterations"]) == 1
    assert preview["latest_iteration"].iteration_number == 1
    (change,) = preview["diff"].changes
    assert (change.column, change.before, change.after) == ("name", "alice", "ALICE")
    assert preview["risk"].level == "low"
    assert preview["risk"].affected_row_count == 3
    assert "Low risk transformation" in preview["risk"].factors
    assert preview["approval"].status == ApprovalStatus.PENDING
    assert preview["execution"] is None


@pytest.mark.asyncio
async def test_preview_of_plan_on_missing_asset(lifecycle, make_request):
    plan = await lifecycle.create_plan(make_request(target_asset="missing_table"))
    assert plan.status == PlanStatus.FAILED

    preview = lifecycle.get_preview(plan.plan_id)

    assert preview["iterations"] == []
    assert preview["diff"].is_empty
    assert preview["risk"].affected_row_count is None


@pytest.mark.asyncio
async def test_history_filters_and_counts(lifecycle, pending_plan, make_request, evaluator, make_evaluation):
    await pending_plan()
    evaluator.evaluate.return_value = make_evaluation(0.1)
    failed = await lifecycle.create_plan(make_request(max_iterations=1))

    history = lifecycle.list_history()
    assert history["stats"]["total"] == 2
    assert history["stats"]["pending_approval"] == 1
    assert history["stats"]["failed"] == 1
    assert history["stats"]["completed"] == 0

    only_failed = lifecycle.list_history(status="FAILED")
    assert [p.plan_id for p in only_failed["plans"]] == [failed.plan_id]

    assert lifecycle.list_history(asset="orders")["stats"]["total"] == 0
    assert len(lifecycle.list_history(limit=1)["plans"]) == 1

    with pytest.raises(ValidationError):
        lifecycle.list_history(status="bogus")
