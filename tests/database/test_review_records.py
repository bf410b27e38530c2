"""Tests for approval and execution log records."""

import pytest

from refinery.database.models.approval import ApprovalStatus
from refinery.database.models.execution_log import ExecutionOutcome


@pytest.fixture
def plan_id(services, make_request):
    return services.plans.create_plan(make_request(), "low").plan_id


def test_pending_approval_is_created_once(services, plan_id):
    assert services.approvals.create_pending(plan_id) is True
    assert services.approvals.create_pending(plan_id) is False

    approval = services.approvals.get_approval(plan_id)
    assert approval.status == ApprovalStatus.PENDING
    assert approval.reviewed_by is None


def test_decision_updates_existing_request(services, plan_id):
    services.approvals.create_pending(plan_id)

    approval = services.approvals.record_decision(
        plan_id, ApprovalStatus.REJECTED, "rui", "wrong column"
    )

    assert approval.status == ApprovalStatus.REJECTED
    assert approval.reviewed_by == "rui"
    assert approval.comment == "wrong column"
    assert approval.requested_at is not None
    assert approval.reviewed_at is not None


def test_decision_without_request_creates_row(services, plan_id):
    approval = services.approvals.record_decision(
        plan_id, ApprovalStatus.APPROVED, "rui", None
    )

    assert approval.status == ApprovalStatus.APPROVED
    assert approval.to_dict()["status"] == "approved"


def test_execution_log_lifecycle(services, plan_id):
    logs = services.execution_logs

    started = logs.start_execution(plan_id, "ops", "code", 2)
    assert started.outcome == ExecutionOutcome.RUNNING
    assert started.attempts == 1
    assert started.snapshot_table is None

    logs.record_snapshot(plan_id, "refinery_snapshot_x")
    logs.fail_execution(plan_id, "boom", 15)
    failed = logs.get_log(plan_id)
    assert failed.outcome == ExecutionOutcome.FAILED
    assert failed.error_message == "boom"
    assert failed.snapshot_table == "refinery_snapshot_x"

    restarted = logs.start_execution(plan_id, "ops2", "code", 2)
    assert restarted.attempts == 2
    assert restarted.executed_by == "ops2"
    assert restarted.error_message is None
    assert restarted.snapshot_table is None

    logs.complete_execution(plan_id, rows_affected=3, duration_ms=20)
    done = logs.get_log(plan_id)
    assert done.outcome == ExecutionOutcome.SUCCESS
    assert done.rows_affected == 3
    assert done.completed_at is not None

    logs.mark_rolled_back(plan_id, "lead")
    rolled_back = logs.get_log(plan_id)
    assert rolled_back.outcome == ExecutionOutcome.ROLLED_BACK
    assert rolled_back.rolled_back_by == "lead"
    assert rolled_back.rolled_back_at is not None


def test_missing_log(services, plan_id):
    assert services.execution_logs.get_log(plan_id) is None
