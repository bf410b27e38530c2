"""Durable, retried steps for the iteration workflow."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from refinery.database.base import DatabaseError
from refinery.database.services.step_service import MISSING
from refinery.error_handling import InfrastructureError, StepFailedError

if TYPE_CHECKING:
    from refinery.database.services.container import ServiceContainer

logger = logging.getLogger(__name__)

StepFunc = Callable[[], Any]


class StepRunner:
    """Runs named steps of one plan's workflow exactly once.

    A completed step's output is stored under ``(plan_id, step_name)``; when
    the workflow runs again for the same plan the stored output is returned
    instead of calling the step. Infrastructure failures are retried with
    exponential backoff, anything else propagates on the first failure.

    ``before_step`` is called before each step that actually runs, so the
    caller can abort between steps (for example on cancellation).
    """

    def __init__(
        self,
        services: ServiceContainer,
        plan_id: str,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        before_step: Callable[[str], None] | None = None,
    ):
        self.services = services
        self.plan_id = plan_id
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.before_step = before_step

    def _load(self, step_name: str) -> Any:
        try:
            return self.services.steps.get_output(self.plan_id, step_name)
        except DatabaseError as e:
            raise InfrastructureError(str(e), original_error=e) from e

    def _store(self, step_name: str, output: Any, attempts: int) -> None:
        try:
            self.services.steps.record_output(self.plan_id, step_name, output, attempts)
        except DatabaseError as e:
            raise InfrastructureError(str(e), original_error=e) from e

    def _delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    async def run(
        self,
        step_name: str,
        fn: StepFunc,
        serialize: Callable[[Any], Any] | None = None,
        deserialize: Callable[[Any], Any] | None = None,
    ) -> Any:
        """Run a step, or replay its stored output.

        ``serialize`` turns the step's return value into JSON-compatible data
        for storage; ``deserialize`` turns stored data back into the value the
        caller expects. Both are applied on a fresh run as well, so a run and
        a replay hand the caller the same thing.

        Raises:
            StepFailedError: If the step still fails after all retries
        """
        stored = self._load(step_name)
        if stored is not MISSING:
            logger.debug(f"Replaying step {step_name} for plan {self.plan_id}")
            return deserialize(stored) if deserialize else stored

        if self.before_step is not None:
            self.before_step(step_name)

        attempts = 0
        while True:
            attempts += 1
            try:
                value = fn()
                if inspect.isawaitable(value):
                    value = await value
                break
            except (InfrastructureError, DatabaseError) as e:
                if attempts > self.max_retries:
                    logger.error(
                        f"Step {step_name} for plan {self.plan_id} failed after "
                        f"{attempts} attempts: {e}"
                    )
                    raise StepFailedError(step_name, attempts, e) from e

                delay = self._delay(attempts)
                logger.warning(
                    f"Step {step_name} for plan {self.plan_id} failed "
                    f"(attempt {attempts}/{self.max_retries + 1}), retrying in "
                    f"{delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

        output = serialize(value) if serialize else value
        self._store(step_name, output, attempts)
        return deserialize(output) if deserialize else output
