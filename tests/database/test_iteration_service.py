"""Tests for the append-only iteration history."""

import pytest

from refinery.database.models.iteration import TransformationIteration


@pytest.fixture
def plan_id(services, make_request):
    return services.plans.create_plan(make_request(), "low").plan_id


def _iteration(plan_id, number, accuracy, meets, code=None):
    return TransformationIteration(
        plan_id=plan_id,
        iteration_number=number,
        code=code or f"code-{number}",
        success=True,
        meets_threshold=meets,
        accuracy=accuracy,
        execution_time_ms=10,
        sample_size=3,
        output={"stats": {"total": 3}},
        evaluation_notes="ok",
        issues_found=["a"],
        improvements_suggested=["b"],
    )


def test_insert_and_read_back(services, plan_id):
    services.iterations.insert_iteration(_iteration(plan_id, 1, 0.4, False))

    (stored,) = services.iterations.list_iterations(plan_id)
    assert stored.code == "code-1"
    assert stored.accuracy == pytest.approx(0.4)
    assert stored.output == {"stats": {"total": 3}}
    assert stored.issues_found == ["a"]
    assert stored.improvements_suggested == ["b"]
    assert stored.created_at is not None


def test_second_insert_for_same_number_is_ignored(services, plan_id):
    services.iterations.insert_iteration(_iteration(plan_id, 1, 0.4, False))
    services.iterations.insert_iteration(_iteration(plan_id, 1, 0.9, True, code="other"))

    assert services.iterations.count_iterations(plan_id) == 1
    assert services.iterations.get_iteration(plan_id, 1).code == "code-1"


def test_latest_and_satisfying_iterations(services, plan_id):
    assert services.iterations.get_latest_iteration(plan_id) is None
    assert services.iterations.get_satisfying_iteration(plan_id) is None

    services.iterations.insert_iteration(_iteration(plan_id, 1, 0.4, False))
    services.iterations.insert_iteration(_iteration(plan_id, 2, 0.97, True))
    services.iterations.insert_iteration(_iteration(plan_id, 3, 0.5, False))

    assert services.iterations.get_latest_iteration(plan_id).iteration_number == 3
    assert services.iterations.get_satisfying_iteration(plan_id).iteration_number == 2
    assert services.iterations.get_iteration(plan_id, 7) is None


def test_skip_iteration_rows_have_no_accuracy(services, plan_id):
    services.iterations.insert_iteration(_iteration(plan_id, 1, None, True))

    assert services.iterations.get_iteration(plan_id, 1).accuracy is None
