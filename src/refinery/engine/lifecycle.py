"""Plan lifecycle: creation, human review, production execution and rollback."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from refinery.database.base import DatabaseError, WriteConflictError
from refinery.database.models.approval import ApprovalStatus
from refinery.database.models.execution_log import ExecutionOutcome
from refinery.database.models.plan import (
    SOURCE_TYPES,
    PlanStatus,
    TransformationPlan,
    TransformationRequest,
)
from refinery.engine.iteration import json_safe_rows
from refinery.engine.preview import diff_samples
from refinery.engine.risk import assess_risk
from refinery.error_handling import (
    ExecutionFailure,
    InfrastructureError,
    InvalidStateTransitionError,
    MissingReasonError,
    MissingReviewerError,
    StaleCodeError,
    ValidationError,
)
from refinery.jobs.manager import JobManager
from refinery.jobs.models import Job, JobType
from refinery.utils.validation import (
    require_text,
    validate_asset_name,
    validate_sql_identifier,
)

if TYPE_CHECKING:
    from refinery.core.policy import TransformationPolicy
    from refinery.database.services.container import ServiceContainer
    from refinery.engine.iteration import IterationEngine
    from refinery.jobs.executor import JobExecutor
    from refinery.sandbox.executor import SandboxExecutor

logger = logging.getLogger(__name__)

DEFAULT_PRODUCTION_TIMEOUT_SECONDS = 600
MAX_ERROR_MESSAGE_CHARS = 1000
RECOVERY_BATCH_SIZE = 1000


def snapshot_name_for(plan_id: str) -> str:
    return f"refinery_snapshot_{plan_id.replace('-', '')}"


def inline_run_id(plan_id: str) -> str:
    """Run id for iterations driven in-process rather than by a job."""
    return f"inline-{plan_id}"


class PlanLifecycleManager:
    """Public surface of the engine.

    Every gated operation re-checks the plan's status inside a single
    compare-and-swap update, so the status column is the only gate between
    a plan and production data.
    """

    def __init__(
        self,
        services: ServiceContainer,
        policy: TransformationPolicy,
        engine: IterationEngine,
        sandbox: SandboxExecutor,
        job_executor: JobExecutor | None = None,
        production_timeout_seconds: float = DEFAULT_PRODUCTION_TIMEOUT_SECONDS,
        production_memory_limit_mb: int | None = None,
    ):
        self.services = services
        self.policy = policy
        self.engine = engine
        self.sandbox = sandbox
        self.job_executor = job_executor
        self.job_manager = (
            job_executor.job_manager
            if job_executor is not None
            else JobManager(services.db_manager)
        )
        self.production_timeout_seconds = production_timeout_seconds
        self.production_memory_limit_mb = production_memory_limit_mb

        if job_executor is not None and not job_executor.has_handler(
            JobType.ITERATE_PLAN
        ):
            job_executor.register_async_handler(
                JobType.ITERATE_PLAN, self._handle_iterate_job
            )

    async def _handle_iterate_job(self, job: Job) -> None:
        # The job id is the run id, so a re-queued job resumes its own lock
        plan = await self.engine.run(job.plan_id, run_id=job.job_id)
        logger.info(f"Iteration job {job.job_id} left plan {plan.plan_id} {plan.status.value}")

    def _validate_request(self, request: TransformationRequest) -> TransformationRequest:
        """Check a request and return a normalized copy.

        Raises:
            ValidationError: If any field is missing or out of range
        """
        target_asset = require_text(request.target_asset, "target_asset")
        transformation_type = require_text(
            request.transformation_type, "transformation_type"
        )
        description = require_text(request.description, "description")
        requested_by = require_text(request.requested_by, "requested_by")

        validate_asset_name(target_asset)
        target_column = request.target_column.strip() if request.target_column else None
        if target_column:
            validate_sql_identifier(target_column, "target_column")

        if request.source_type not in SOURCE_TYPES:
            raise ValidationError(
                f"source_type must be one of: {', '.join(SOURCE_TYPES)}"
            )

        threshold = request.accuracy_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, int | float):
            raise ValidationError("accuracy_threshold must be a number")
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError(
                f"accuracy_threshold must be between 0 and 1, got {threshold}"
            )

        max_iterations = request.max_iterations
        if isinstance(max_iterations, bool) or not isinstance(max_iterations, int):
            raise ValidationError("max_iterations must be an integer")
        if max_iterations < 1:
            raise ValidationError(f"max_iterations must be at least 1, got {max_iterations}")

        if request.parameters is not None and not isinstance(request.parameters, dict):
            raise ValidationError("parameters must be a mapping")

        # Raises for types missing from the policy table
        self.policy.get(transformation_type)

        return TransformationRequest(
            target_asset=target_asset,
            transformation_type=transformation_type,
            description=description,
            requested_by=requested_by,
            source_type=request.source_type,
            source_id=request.source_id,
            target_column=target_column,
            parameters=dict(request.parameters or {}),
            accuracy_threshold=float(threshold),
            max_iterations=max_iterations,
        )

    async def create_plan(self, request: TransformationRequest) -> TransformationPlan:
        """Validate a request, persist a draft plan and start iterating it.

        Skip-iteration types, and every type when no job executor is attached,
        are iterated before this returns. Otherwise an ``iterate_plan`` job is
        queued and the draft plan is returned.

        Raises:
            ValidationError: If the request is invalid (nothing is persisted)
        """
        request = self._validate_request(request)
        plan = self.services.plans.create_plan(
            request, self.policy.risk_level(request.transformation_type)
        )
        logger.info(
            f"Created plan {plan.plan_id} ({plan.transformation_type}) "
            f"for {plan.target_asset}"
        )

        inline = (
            self.job_executor is None
            or not self.policy.requires_iteration(plan.transformation_type)
        )
        if not inline:
            job = self.job_executor.submit_job(
                JobType.ITERATE_PLAN,
                plan_id=plan.plan_id,
                message=f"Iterate plan {plan.plan_id}",
            )
            logger.info(f"Queued job {job.job_id} for plan {plan.plan_id}")
            return plan

        return await self._run_inline(plan.plan_id, inline_run_id(plan.plan_id))

    async def _run_inline(self, plan_id: str, run_id: str) -> TransformationPlan:
        try:
            return await self.engine.run(plan_id, run_id=run_id)
        except InfrastructureError as e:
            # The engine has already recorded the failure on the plan
            logger.error(f"Iteration of plan {plan_id} failed: {e}")
            return self.services.plans.require_plan(plan_id)

    async def resume(self, plan_id: str) -> TransformationPlan:
        """Drive a plan whose iteration was left unfinished by a dead process.

        The run takes over under the plan's recorded lock owner, so steps
        already completed are replayed from the step log and a pending
        cancellation is honoured at the first check. Plans still owned by a
        queued or running job are left to the worker.

        Raises:
            InvalidStateTransitionError: If the plan is not draft or
                iterating, or a job is still responsible for it
        """
        plan = self.services.plans.require_plan(plan_id)
        expected = (PlanStatus.DRAFT.value, PlanStatus.ITERATING.value)
        if plan.status not in (PlanStatus.DRAFT, PlanStatus.ITERATING):
            raise InvalidStateTransitionError(plan_id, plan.status.value, "resume", expected)

        job = self.job_manager.get_active_job_for_plan(plan_id)
        if job is not None:
            raise InvalidStateTransitionError(
                plan_id,
                f"{plan.status.value} (owned by {job.status.value} job {job.job_id})",
                "resume",
                expected,
            )

        run_id = plan.lock_owner or inline_run_id(plan_id)
        logger.info(f"Resuming plan {plan_id} as run {run_id}")
        return await self._run_inline(plan_id, run_id)

    def get_plan(self, plan_id: str) -> TransformationPlan:
        return self.services.plans.require_plan(plan_id)

    def request_approval(self, plan_id: str) -> TransformationPlan:
        """Open a pending approval request for a plan awaiting review.

        Raises:
            InvalidStateTransitionError: If the plan is not pending approval
        """
        plan = self.services.plans.require_plan(plan_id)
        if plan.status != PlanStatus.PENDING_APPROVAL:
            raise InvalidStateTransitionError(
                plan_id,
                plan.status.value,
                "request approval for",
                (PlanStatus.PENDING_APPROVAL.value,),
            )

        if self.services.approvals.create_pending(plan_id):
            logger.info(f"Approval requested for plan {plan_id}")
        return plan

    def _decide(
        self,
        plan_id: str,
        new_status: PlanStatus,
        decision: ApprovalStatus,
        reviewed_by: str,
        comment: str | None,
        operation: str,
    ) -> TransformationPlan:
        try:
            with self.services.transaction():
                plan = self.services.plans.transition(
                    plan_id, (PlanStatus.PENDING_APPROVAL,), new_status, operation
                )
                self.services.approvals.record_decision(
                    plan_id, decision, reviewed_by, comment
                )
        except WriteConflictError as e:
            raise InvalidStateTransitionError(
                plan_id,
                "changed concurrently",
                operation,
                (PlanStatus.PENDING_APPROVAL.value,),
            ) from e

        logger.info(f"Plan {plan_id} {decision.value} by {reviewed_by}")
        return plan

    def approve(
        self, plan_id: str, reviewed_by: str | None, comment: str | None = None
    ) -> TransformationPlan:
        """Approve a plan for production execution.

        Raises:
            MissingReviewerError: If no reviewer is given
            InvalidStateTransitionError: If the plan is not pending approval
        """
        if reviewed_by is None or not reviewed_by.strip():
            raise MissingReviewerError("reviewed_by is required to approve a plan")

        return self._decide(
            plan_id,
            PlanStatus.APPROVED,
            ApprovalStatus.APPROVED,
            reviewed_by.strip(),
            comment,
            "approve",
        )

    def reject(
        self, plan_id: str, reviewed_by: str | None, comment: str | None
    ) -> TransformationPlan:
        """Reject a plan. Rejection is terminal.

        Raises:
            MissingReviewerError: If no reviewer is given
            MissingReasonError: If no reason is given
            InvalidStateTransitionError: If the plan is not pending approval
        """
        if reviewed_by is None or not reviewed_by.strip():
            raise MissingReviewerError("reviewed_by is required to reject a plan")
        if comment is None or not comment.strip():
            raise MissingReasonError("A comment explaining the rejection is required")

        return self._decide(
            plan_id,
            PlanStatus.REJECTED,
            ApprovalStatus.REJECTED,
            reviewed_by.strip(),
            comment.strip(),
            "reject",
        )

    async def execute(self, plan_id: str, executed_by: str | None) -> TransformationPlan:
        """Run an approved plan's code against the full production table.

        The table is snapshotted first. On success the plan is completed. On
        any failure, including cancellation of the calling task, the error is
        logged, the table is restored from the snapshot if it was already
        written and the plan returns to ``approved`` so it can be triggered
        again.

        Raises:
            ValidationError: If no executor is given
            InvalidStateTransitionError: If the plan is not approved
            StaleCodeError: If the plan's code is not the code that passed
        """
        executed_by = require_text(executed_by, "executed_by")

        plan = self.services.plans.require_plan(plan_id)
        if plan.status != PlanStatus.APPROVED:
            raise InvalidStateTransitionError(
                plan_id, plan.status.value, "execute", (PlanStatus.APPROVED.value,)
            )

        iteration = self.services.iterations.get_satisfying_iteration(plan_id)
        if iteration is None or iteration.code != plan.generated_code:
            raise StaleCodeError(
                f"Plan {plan_id} code does not match the iteration that met "
                f"the accuracy threshold"
            )

        plan = self.services.plans.transition(
            plan_id, (PlanStatus.APPROVED,), PlanStatus.EXECUTING, "execute"
        )

        started = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - started) * 1000)

        logger.info(f"Executing plan {plan_id} on {plan.target_asset} for {executed_by}")

        written = False
        try:
            self.services.execution_logs.start_execution(
                plan_id, executed_by, iteration.code, iteration.iteration_number
            )
            snapshot = self.services.data.snapshot_table(
                plan.target_asset, snapshot_name_for(plan_id)
            )
            self.services.execution_logs.record_snapshot(plan_id, snapshot)
            rows = json_safe_rows(self.services.data.read_all_rows(plan.target_asset))
            result = await self.sandbox.execute(
                iteration.code,
                rows,
                timeout_seconds=self.production_timeout_seconds,
                memory_limit_mb=self.production_memory_limit_mb,
            )
            if not result.success:
                raise ExecutionFailure(result.error or "Execution failed")
            rows_affected = self.services.data.replace_rows(plan.target_asset, result.rows)
            written = True

            with self.services.transaction():
                self.services.execution_logs.complete_execution(
                    plan_id, rows_affected, elapsed_ms()
                )
                plan = self.services.plans.transition(
                    plan_id,
                    (PlanStatus.EXECUTING,),
                    PlanStatus.COMPLETED,
                    "complete execution",
                    error_message=None,
                )
        except (ExecutionFailure, DatabaseError) as e:
            logger.error(f"Production execution of plan {plan_id} failed: {e}")
            return self._abort_execution(plan_id, str(e), elapsed_ms(), restore=written)
        except BaseException as e:
            logger.error(f"Production execution of plan {plan_id} interrupted: {e!r}")
            try:
                self._abort_execution(
                    plan_id, f"Execution interrupted: {e!r}", elapsed_ms(), restore=written
                )
            except Exception as revert_error:
                logger.error(f"Could not revert plan {plan_id}: {revert_error}")
            raise

        logger.info(f"Plan {plan_id} wrote {rows_affected} rows to {plan.target_asset}")
        return plan

    def _abort_execution(
        self, plan_id: str, message: str, duration_ms: int, restore: bool
    ) -> TransformationPlan:
        """Record a failed production run and hand the plan back to ``approved``.

        With ``restore`` the table is first put back from the snapshot taken
        before the run.
        """
        if restore:
            log = self.services.execution_logs.get_log(plan_id)
            if log is not None and log.snapshot_table:
                plan = self.services.plans.require_plan(plan_id)
                try:
                    self.services.data.restore_snapshot(plan.target_asset, log.snapshot_table)
                except DatabaseError as e:
                    logger.error(f"Could not restore {plan.target_asset} for plan {plan_id}: {e}")
                    message = f"{message} (restore from {log.snapshot_table} failed: {e})"

        try:
            self.services.execution_logs.fail_execution(plan_id, message, duration_ms)
        except DatabaseError as e:
            logger.error(f"Could not record failed execution of plan {plan_id}: {e}")

        return self.services.plans.transition(
            plan_id,
            (PlanStatus.EXECUTING,),
            PlanStatus.APPROVED,
            "revert failed execution",
            error_message=message[:MAX_ERROR_MESSAGE_CHARS],
        )

    def recover_interrupted_executions(self) -> list[TransformationPlan]:
        """Hand plans stranded in ``executing`` back to ``approved``.

        A plan only stays in ``executing`` if the process running it died.
        The table is restored from the plan's snapshot when one was taken, so
        a run that died mid-write leaves no partial result behind. Call this
        only where no other process can be executing plans.
        """
        recovered = []
        stranded = self.services.plans.list_plans(
            status=PlanStatus.EXECUTING, limit=RECOVERY_BATCH_SIZE
        )
        for plan in stranded:
            try:
                plan = self._abort_execution(
                    plan.plan_id,
                    "Execution interrupted before it finished",
                    0,
                    restore=True,
                )
            except InvalidStateTransitionError as e:
                logger.warning(f"Plan {plan.plan_id} changed during recovery: {e}")
                continue
            logger.warning(f"Recovered interrupted execution of plan {plan.plan_id}")
            recovered.append(plan)
        return recovered

    def rollback(self, plan_id: str, rolled_back_by: str | None) -> TransformationPlan:
        """Restore the production table from the snapshot taken before execution.

        Raises:
            ValidationError: If no operator is given
            InvalidStateTransitionError: If the plan has no successful
                execution left to roll back
        """
        rolled_back_by = require_text(rolled_back_by, "rolled_back_by")

        plan = self.services.plans.require_plan(plan_id)
        if plan.status != PlanStatus.COMPLETED:
            raise InvalidStateTransitionError(
                plan_id, plan.status.value, "roll back", (PlanStatus.COMPLETED.value,)
            )

        log = self.services.execution_logs.get_log(plan_id)
        if log is None or log.outcome != ExecutionOutcome.SUCCESS or not log.snapshot_table:
            outcome = log.outcome.value if log else "not executed"
            raise InvalidStateTransitionError(
                plan_id, f"completed/{outcome}", "roll back", ("completed/success",)
            )

        restored = self.services.data.restore_snapshot(plan.target_asset, log.snapshot_table)
        self.services.execution_logs.mark_rolled_back(plan_id, rolled_back_by)
        logger.info(
            f"Rolled back plan {plan_id}: restored {restored} rows of "
            f"{plan.target_asset} for {rolled_back_by}"
        )
        return plan

    def cancel(self, plan_id: str) -> TransformationPlan:
        """Cancel a plan that has not finished iterating.

        A draft plan is cancelled at once. An iterating plan gets a durable
        cancellation flag; the run working on it stops at its next check and
        moves it to ``cancelled``. If nothing is running the plan any more,
        ``resume`` finishes the cancellation.

        Raises:
            InvalidStateTransitionError: If the plan is past iteration
        """
        plan = self.services.plans.require_plan(plan_id)

        if plan.status == PlanStatus.DRAFT:
            try:
                plan = self.services.plans.transition(
                    plan_id, (PlanStatus.DRAFT,), PlanStatus.CANCELLED, "cancel"
                )
            except InvalidStateTransitionError:
                plan = self.services.plans.require_plan(plan_id)
            else:
                job = self.job_manager.get_active_job_for_plan(plan_id)
                if job is not None:
                    self.job_manager.cancel_job(job.job_id)
                return plan

        if plan.status == PlanStatus.ITERATING:
            if self.services.plans.request_cancel(plan_id):
                logger.info(f"Cancellation requested for plan {plan_id}")
                return self.services.plans.require_plan(plan_id)
            # The run finished between the read and the flag update
            plan = self.services.plans.require_plan(plan_id)
            if plan.status == PlanStatus.CANCELLED:
                return plan

        raise InvalidStateTransitionError(
            plan_id,
            plan.status.value,
            "cancel",
            (PlanStatus.DRAFT.value, PlanStatus.ITERATING.value),
        )

    def get_preview(self, plan_id: str) -> dict[str, Any]:
        """Everything a reviewer needs to decide on a plan. Read-only."""
        plan = self.services.plans.require_plan(plan_id)
        iterations = self.services.iterations.list_iterations(plan_id)
        latest = iterations[-1] if iterations else None

        output = latest.output if latest else {}
        diff = diff_samples(
            output.get("sample_before") or [], output.get("sample_after") or []
        )

        try:
            affected_row_count = self.services.data.count_rows(plan.target_asset)
        except DatabaseError as e:
            logger.warning(f"Could not count rows of {plan.target_asset}: {e}")
            affected_row_count = None

        return {
            "plan": plan,
            "latest_iteration": latest,
            "iterations": iterations,
            "diff": diff,
            "risk": assess_risk(plan, affected_row_count),
            "approval": self.services.approvals.get_approval(plan_id),
            "execution": self.services.execution_logs.get_log(plan_id),
        }

    def list_history(
        self,
        asset: str | None = None,
        status: str | PlanStatus | None = None,
        limit: int = 50,
    ) -> dict[str, Any]:
        """Recent plans, newest first, plus per-status counts.

        Raises:
            ValidationError: If ``status`` is not a plan status
        """
        if isinstance(status, str):
            try:
                status = PlanStatus.from_string(status)
            except ValueError as e:
                raise ValidationError(str(e)) from e

        plans = self.services.plans.list_plans(asset=asset, status=status, limit=limit)
        stats: dict[str, int] = dict(self.services.plans.get_plan_counts_by_status(asset))
        stats["total"] = sum(stats.values())
        return {"plans": plans, "stats": stats}
