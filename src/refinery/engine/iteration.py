"""Iteration engine: the generate, execute, evaluate convergence loop."""

from __future__ import annotations

import json
import logging
from functools import partial
from typing import TYPE_CHECKING, Any

from refinery.core.agents.evaluation import Evaluation
from refinery.database.models.iteration import TransformationIteration
from refinery.database.models.plan import PlanStatus, TransformationPlan
from refinery.engine.steps import StepRunner
from refinery.error_handling import InvalidStateTransitionError
from refinery.sandbox.executor import SandboxResult

if TYPE_CHECKING:
    from refinery.core.agents import CodeSynthesisAgent, EvaluationAgent
    from refinery.core.policy import TransformationPolicy
    from refinery.database.services.container import ServiceContainer
    from refinery.sandbox.executor import SandboxExecutor

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 1000
CONTEXT_ROWS = 10
MAX_ERROR_MESSAGE_CHARS = 1000


class PlanCancelled(Exception):
    """Raised inside a run when the plan's cancellation flag is seen."""


def json_safe_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # Dates and decimals become strings, matching what the sandbox receives
    return json.loads(json.dumps(rows, default=str))


class IterationEngine:
    """Drives one plan from ``draft`` to a post-iteration status.

    Every unit of work runs as a named step of a ``StepRunner``, so a run
    interrupted part way can be started again with the same run id and
    continue where it stopped. Iterations of one plan are strictly
    sequential; the code generator only sees the iteration right before.
    """

    def __init__(
        self,
        services: ServiceContainer,
        policy: TransformationPolicy,
        synthesizer: CodeSynthesisAgent,
        evaluator: EvaluationAgent,
        sandbox: SandboxExecutor,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
    ):
        self.services = services
        self.policy = policy
        self.synthesizer = synthesizer
        self.evaluator = evaluator
        self.sandbox = sandbox
        self.sample_size = sample_size
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    async def run(self, plan_id: str, run_id: str) -> TransformationPlan:
        """Run the iteration workflow for a plan and return the final plan.

        Raises:
            PlanNotFoundError: If the plan does not exist
            StepFailedError: If a step kept failing; the plan is marked failed
        """
        plan = self._acquire(plan_id, run_id)
        if plan is None:
            return self.services.plans.require_plan(plan_id)

        steps = StepRunner(
            self.services,
            plan_id,
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            before_step=lambda _name: self._check_cancelled(plan_id),
        )

        try:
            self._check_cancelled(plan_id)
            if self.policy.requires_iteration(plan.transformation_type):
                return await self._converge(plan, steps)
            return await self._single_pass(plan, steps)
        except PlanCancelled:
            logger.info(f"Plan {plan_id} cancelled during iteration")
            return self.services.plans.transition(
                plan_id, (PlanStatus.ITERATING,), PlanStatus.CANCELLED, "cancel"
            )
        except Exception as e:
            self._mark_failed(plan_id, e)
            raise

    def _acquire(self, plan_id: str, run_id: str) -> TransformationPlan | None:
        """Take the iteration lock, or return None if another run holds it."""
        plan = self.services.plans.require_plan(plan_id)

        if plan.status == PlanStatus.ITERATING and plan.lock_owner == run_id:
            logger.info(f"Resuming iteration of plan {plan_id} (run {run_id})")
            return plan

        if plan.status != PlanStatus.DRAFT:
            logger.info(
                f"Not iterating plan {plan_id}: status {plan.status.value}, "
                f"lock owner {plan.lock_owner}"
            )
            return None

        try:
            plan = self.services.plans.transition(
                plan_id,
                (PlanStatus.DRAFT,),
                PlanStatus.ITERATING,
                "start iteration",
                lock_owner=run_id,
            )
        except InvalidStateTransitionError as e:
            logger.info(f"Lost iteration lock for plan {plan_id}: {e}")
            return None

        logger.info(f"Started iterating plan {plan_id} (run {run_id})")
        return plan

    def _check_cancelled(self, plan_id: str) -> None:
        if self.services.plans.is_cancel_requested(plan_id):
            raise PlanCancelled(plan_id)

    def _mark_failed(self, plan_id: str, error: Exception) -> None:
        try:
            self.services.plans.transition(
                plan_id,
                (PlanStatus.ITERATING,),
                PlanStatus.FAILED,
                "fail iteration",
                error_message=str(error)[:MAX_ERROR_MESSAGE_CHARS],
                cancel_requested=False,
            )
        except InvalidStateTransitionError as e:
            logger.warning(f"Could not mark plan {plan_id} failed: {e}")

    async def _fetch_context(self, plan: TransformationPlan) -> list[dict[str, Any]]:
        if not self.services.data.asset_exists(plan.target_asset):
            logger.warning(
                f"Asset {plan.target_asset} not found; generating code without samples"
            )
            return []
        rows = self.services.data.get_sample_rows(plan.target_asset, CONTEXT_ROWS)
        return json_safe_rows(rows)

    async def _fetch_sample(self, plan: TransformationPlan) -> list[dict[str, Any]]:
        rows = self.services.data.get_sample_rows(plan.target_asset, self.sample_size)
        return json_safe_rows(rows)

    async def _execute(self, code: str, rows: list[dict[str, Any]]) -> SandboxResult:
        return await self.sandbox.execute(code, rows)

    def _persist(self, iteration: TransformationIteration) -> dict[str, Any]:
        """Append an iteration and bring the plan's progress fields up to date."""
        with self.services.transaction():
            self.services.iterations.insert_iteration(iteration)
            count = self.services.iterations.count_iterations(iteration.plan_id)
            self.services.plans.update_fields(
                iteration.plan_id,
                iteration_count=count,
                generated_code=iteration.code,
                final_accuracy=iteration.accuracy,
            )
        return {"iteration_number": iteration.iteration_number, "iteration_count": count}

    async def _single_pass(
        self, plan: TransformationPlan, steps: StepRunner
    ) -> TransformationPlan:
        """Generate code once and hand it straight to review."""
        context = await steps.run("fetch-context", partial(self._fetch_context, plan))
        code = await steps.run(
            "generate-code-1",
            partial(self.synthesizer.synthesize, plan, sample_rows=context),
        )
        self._check_cancelled(plan.plan_id)

        iteration = TransformationIteration(
            plan_id=plan.plan_id,
            iteration_number=1,
            code=code,
            success=True,
            meets_threshold=True,
            accuracy=None,
            evaluation_notes=(
                f"Evaluation skipped: transformation type "
                f"'{plan.transformation_type}' does not require iteration"
            ),
        )
        await steps.run("persist-iteration-1", partial(self._persist, iteration))

        return self.services.plans.transition(
            plan.plan_id,
            (PlanStatus.ITERATING,),
            PlanStatus.PENDING_APPROVAL,
            "finish iteration",
            error_message=None,
            cancel_requested=False,
        )

    async def _converge(
        self, plan: TransformationPlan, steps: StepRunner
    ) -> TransformationPlan:
        context = await steps.run("fetch-context", partial(self._fetch_context, plan))

        previous_code: str | None = None
        previous_evaluation: Evaluation | None = None
        satisfied = False

        for n in range(1, plan.max_iterations + 1):
            self._check_cancelled(plan.plan_id)

            code = await steps.run(
                f"generate-code-{n}",
                partial(
                    self.synthesizer.synthesize,
                    plan,
                    previous_code,
                    previous_evaluation,
                    context,
                ),
            )
            sample = await steps.run(f"fetch-sample-{n}", partial(self._fetch_sample, plan))
            result = await steps.run(
                f"execute-{n}",
                partial(self._execute, code, sample),
                serialize=lambda r: r.to_dict(),
                deserialize=SandboxResult.from_dict,
            )
            evaluation = await steps.run(
                f"evaluate-{n}",
                partial(
                    self.evaluator.evaluate, result, plan, plan.accuracy_threshold
                ),
                serialize=lambda ev: ev.to_dict(),
                deserialize=Evaluation.from_dict,
            )

            # A step in flight finishes; its result is dropped if cancelled since
            self._check_cancelled(plan.plan_id)

            iteration = TransformationIteration(
                plan_id=plan.plan_id,
                iteration_number=n,
                code=code,
                success=result.success,
                meets_threshold=evaluation.meets_threshold,
                accuracy=evaluation.accuracy,
                execution_time_ms=result.execution_time_ms,
                sample_size=len(sample),
                output=result.output or {},
                error_message=result.error,
                evaluation_notes=evaluation.notes,
                issues_found=evaluation.issues,
                improvements_suggested=evaluation.improvements,
            )
            await steps.run(f"persist-iteration-{n}", partial(self._persist, iteration))

            logger.info(
                f"Plan {plan.plan_id} iteration {n}/{plan.max_iterations}: "
                f"accuracy {evaluation.accuracy}, "
                f"meets threshold {evaluation.meets_threshold}"
            )

            previous_code, previous_evaluation = code, evaluation
            if evaluation.meets_threshold:
                satisfied = True
                break

        if satisfied:
            return self.services.plans.transition(
                plan.plan_id,
                (PlanStatus.ITERATING,),
                PlanStatus.PENDING_APPROVAL,
                "finish iteration",
                error_message=None,
                cancel_requested=False,
            )

        logger.info(
            f"Plan {plan.plan_id} did not reach accuracy "
            f"{plan.accuracy_threshold} in {plan.max_iterations} iterations"
        )
        return self.services.plans.transition(
            plan.plan_id,
            (PlanStatus.ITERATING,),
            PlanStatus.FAILED,
            "finish iteration",
            error_message=(
                f"Accuracy threshold {plan.accuracy_threshold} not reached "
                f"after {plan.max_iterations} iterations"
            ),
            cancel_requested=False,
        )
