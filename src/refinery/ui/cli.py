"""Command-line interface for Refinery."""

import asyncio
import logging
import signal
import sys
import threading
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any

import click
from dotenv import load_dotenv

from refinery.core import SettingsManager
from refinery.database import DatabaseError, DatabaseManager
from refinery.database.models.plan import (
    DEFAULT_ACCURACY_THRESHOLD,
    DEFAULT_MAX_ITERATIONS,
    SOURCE_TYPES,
    TransformationRequest,
)
from refinery.database.services import ServiceContainer
from refinery.engine import PlanLifecycleManager, create_lifecycle_manager
from refinery.error_handling import RefineryError
from refinery.jobs import JobExecutor, JobManager
from refinery.ui.console import PlanConsole

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _parse_parameters(values: tuple[str, ...]) -> dict[str, str]:
    parameters = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got {item!r}", param_hint="--param")
        parameters[key.strip()] = value
    return parameters


@contextmanager
def _engine(with_executor: bool = False, max_workers: int = 4):
    """Open the databases and build a lifecycle manager for one command."""
    settings = SettingsManager()
    db_manager = DatabaseManager(
        settings.get_system_database_path(), settings.get_data_database_path()
    )
    services = ServiceContainer(db_manager)
    executor = (
        JobExecutor(JobManager(db_manager), max_workers=max_workers)
        if with_executor
        else None
    )
    try:
        yield create_lifecycle_manager(services, settings, job_executor=executor)
    finally:
        if executor is not None:
            executor.stop()
        db_manager.close()


def _run(action: Callable[[PlanConsole], Any]) -> Any:
    """Run a command body, turning engine errors into a message and exit code 1."""
    ui = PlanConsole()
    try:
        return action(ui)
    except RefineryError as e:
        ui.show_system_error(e.get_user_message())
        sys.exit(1)
    except DatabaseError as e:
        ui.show_system_error(f"Database error: {e}")
        sys.exit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging")
def cli(verbose: bool):
    """Refinery - iterate, review and apply data transformation plans."""
    _configure_logging(verbose or SettingsManager().get_verbose_mode())


@cli.group()
def plan():
    """Create and manage transformation plans."""
    pass


@plan.command("create")
@click.option("-a", "--asset", "target_asset", required=True, help="Target table (table or schema.table)")
@click.option("-t", "--type", "transformation_type", required=True, help="Transformation type from the policy table")
@click.option("-d", "--description", required=True, help="What the transformation should do")
@click.option("-r", "--requested-by", required=True, help="Who is asking for the change")
@click.option("-c", "--column", "target_column", default=None, help="Target column, if any")
@click.option(
    "--source-type",
    type=click.Choice(SOURCE_TYPES),
    default="manual",
    show_default=True,
    help="What triggered the request",
)
@click.option("--source-id", default=None, help="Identifier of the triggering issue or rule")
@click.option("-p", "--param", "params", multiple=True, help="Parameter as KEY=VALUE (repeatable)")
@click.option("--threshold", type=float, default=DEFAULT_ACCURACY_THRESHOLD, show_default=True, help="Required accuracy (0-1)")
@click.option("--max-iterations", type=int, default=DEFAULT_MAX_ITERATIONS, show_default=True, help="Iteration bound")
@click.option("--queue", is_flag=True, default=False, help="Queue iteration for `refinery worker` instead of running it now")
def create_plan(
    target_asset: str,
    transformation_type: str,
    description: str,
    requested_by: str,
    target_column: str | None,
    source_type: str,
    source_id: str | None,
    params: tuple[str, ...],
    threshold: float,
    max_iterations: int,
    queue: bool,
):
    """Create a plan and iterate it until it meets the accuracy threshold."""
    request = TransformationRequest(
        target_asset=target_asset,
        transformation_type=transformation_type,
        description=description,
        requested_by=requested_by,
        source_type=source_type,
        source_id=source_id,
        target_column=target_column,
        parameters=_parse_parameters(params),
        accuracy_threshold=threshold,
        max_iterations=max_iterations,
    )

    def action(ui: PlanConsole) -> None:
        with _engine(with_executor=queue) as lifecycle:
            created = asyncio.run(lifecycle.create_plan(request))
            ui.show_plan(created)
            if queue and created.iteration_count == 0:
                ui.show_info("Iteration queued; run `refinery worker` to process it.")

    _run(action)


@plan.command("preview")
@click.argument("plan_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the preview as JSON")
def preview_plan(plan_id: str, as_json: bool):
    """Show iterations, sample changes and risk of a plan."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            preview = lifecycle.get_preview(plan_id)
        if as_json:
            ui.show_json(
                {
                    "plan": preview["plan"].to_dict(),
                    "iterations": [it.to_dict() for it in preview["iterations"]],
                    "diff": preview["diff"].to_dict(),
                    "risk": preview["risk"].to_dict(),
                    "approval": preview["approval"].to_dict() if preview["approval"] else None,
                    "execution": preview["execution"].to_dict() if preview["execution"] else None,
                }
            )
        else:
            ui.show_preview(preview)

    _run(action)


@plan.command("request-approval")
@click.argument("plan_id")
def request_approval(plan_id: str):
    """Open a review request for a plan awaiting approval."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            lifecycle.request_approval(plan_id)
        ui.show_system_success(f"Approval requested for plan {plan_id}")

    _run(action)


@plan.command("approve")
@click.argument("plan_id")
@click.option("--reviewer", default=None, help="Reviewer name (required)")
@click.option("--comment", default=None, help="Optional review comment")
def approve_plan(plan_id: str, reviewer: str | None, comment: str | None):
    """Approve a plan for production execution."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            approved = lifecycle.approve(plan_id, reviewer, comment)
        ui.show_system_success(f"Plan {approved.plan_id} approved by {reviewer}")

    _run(action)


@plan.command("reject")
@click.argument("plan_id")
@click.option("--reviewer", default=None, help="Reviewer name (required)")
@click.option("--comment", default=None, help="Reason for rejection (required)")
def reject_plan(plan_id: str, reviewer: str | None, comment: str | None):
    """Reject a plan. Rejected plans cannot be executed."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            rejected = lifecycle.reject(plan_id, reviewer, comment)
        ui.show_system_success(f"Plan {rejected.plan_id} rejected by {reviewer}")

    _run(action)


@plan.command("execute")
@click.argument("plan_id")
@click.option("--by", "executed_by", default=None, help="Who is running the plan (required)")
def execute_plan(plan_id: str, executed_by: str | None):
    """Run an approved plan against the production table."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            result = asyncio.run(lifecycle.execute(plan_id, executed_by))
        if result.error_message:
            ui.show_system_error(f"Execution failed: {result.error_message}")
            ui.show_info("The table was not changed; the plan is still approved.")
            sys.exit(1)
        ui.show_plan(result)

    _run(action)


@plan.command("cancel")
@click.argument("plan_id")
def cancel_plan(plan_id: str):
    """Cancel a plan that is still drafting or iterating."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            cancelled = lifecycle.cancel(plan_id)
        if cancelled.cancel_requested:
            ui.show_system_success(
                f"Cancellation requested; plan {plan_id} stops at its next step"
            )
            ui.show_info(
                "If nothing is running the plan any more, finish with "
                f"`refinery plan resume {plan_id}`."
            )
        else:
            ui.show_system_success(f"Plan {plan_id} {cancelled.status.value}")

    _run(action)


@plan.command("resume")
@click.argument("plan_id")
def resume_plan(plan_id: str):
    """Finish an iteration left unfinished by a stopped process."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            resumed = asyncio.run(lifecycle.resume(plan_id))
        ui.show_plan(resumed)

    _run(action)


@plan.command("rollback")
@click.argument("plan_id")
@click.option("--by", "rolled_back_by", default=None, help="Who is rolling back (required)")
def rollback_plan(plan_id: str, rolled_back_by: str | None):
    """Restore the table a completed plan changed."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            lifecycle.rollback(plan_id, rolled_back_by)
        ui.show_system_success(f"Rolled back plan {plan_id}")

    _run(action)


@plan.command("history")
@click.option("-a", "--asset", default=None, help="Only plans for this asset")
@click.option("-s", "--status", default=None, help="Only plans in this status")
@click.option("-n", "--limit", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print history as JSON")
def plan_history(asset: str | None, status: str | None, limit: int, as_json: bool):
    """List recent plans with per-status counts."""

    def action(ui: PlanConsole) -> None:
        with _engine() as lifecycle:
            history = lifecycle.list_history(asset=asset, status=status, limit=limit)
        if as_json:
            ui.show_json(
                {
                    "plans": [p.to_dict() for p in history["plans"]],
                    "stats": history["stats"],
                }
            )
        else:
            ui.show_history(history)

    _run(action)


def _drain(lifecycle: PlanLifecycleManager, ui: PlanConsole) -> None:
    """Wait for every job that is queued or was interrupted."""
    executor = lifecycle.job_executor
    for job in executor.job_manager.list_jobs(active_only=True):
        try:
            executor.wait_for_job(job.job_id, timeout=None)
        except RefineryError as e:
            ui.show_system_error(f"Job {job.job_id}: {e.get_user_message()}")
        else:
            ui.show_system_success(f"Job {job.job_id} finished")


@cli.command()
@click.option("-w", "--max-workers", type=int, default=4, show_default=True)
@click.option("--once", is_flag=True, default=False, help="Process queued jobs, then exit")
def worker(max_workers: int, once: bool):
    """Run queued iteration jobs, resuming any that were interrupted."""

    def action(ui: PlanConsole) -> None:
        with _engine(with_executor=True, max_workers=max_workers) as lifecycle:
            for recovered in lifecycle.recover_interrupted_executions():
                ui.show_warning(
                    f"Plan {recovered.plan_id} was interrupted while executing; "
                    "it is approved again"
                )
            lifecycle.job_executor.start()
            if once:
                _drain(lifecycle, ui)
                return

            stop = threading.Event()
            signal.signal(signal.SIGTERM, lambda *_: stop.set())
            ui.show_info("Worker running. Press Ctrl+C to stop.")
            try:
                while not stop.wait(1.0):
                    pass
            except KeyboardInterrupt:
                pass
            ui.show_info("Stopping worker...")

    _run(action)


if __name__ == "__main__":
    cli()
