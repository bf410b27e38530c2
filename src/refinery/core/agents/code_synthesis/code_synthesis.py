"""Code synthesis oracle adapter."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from refinery.core.agents.shared.base_agent import BaseAgent
from refinery.error_handling import InfrastructureError
from refinery.sandbox.runner import ALLOWED_MODULES, ROW_ERROR_KEY

if TYPE_CHECKING:
    from refinery.core.agents.evaluation.evaluation import Evaluation
    from refinery.database.models.plan import TransformationPlan

logger = logging.getLogger(__name__)

PROMPT_SAMPLE_ROWS = 10


class CodeSynthesisAgent(BaseAgent):
    """Generates ``transform(data)`` code for a plan.

    The first call for a plan gets the task description and a few sample
    rows. Later calls get only the immediately previous code and its
    evaluation, and are asked to fix what the evaluator reported. Every
    prompt carries the request parameters and the column names.
    """

    SYSTEM_MESSAGE = (
        "You are a data transformation engineer. You write a single Python "
        "function `transform(data)` that takes a list of dict rows and returns "
        "the transformed list of dict rows. Respond with Python code only."
    )

    def get_template_directory(self) -> Path:
        return Path(__file__).parent / "templates"

    def build_prompt(
        self,
        plan: TransformationPlan,
        previous_code: str | None = None,
        previous_evaluation: Evaluation | None = None,
        sample_rows: list[dict[str, Any]] | None = None,
    ) -> str:
        sample = (sample_rows or [])[:PROMPT_SAMPLE_ROWS]
        context = {
            "plan": plan,
            "previous_code": previous_code,
            "previous_accuracy": (
                (previous_evaluation.accuracy or 0.0) if previous_evaluation else 0.0
            ),
            "issues": previous_evaluation.issues if previous_evaluation else [],
            "improvements": (
                previous_evaluation.improvements if previous_evaluation else []
            ),
            "previous_notes": previous_evaluation.notes if previous_evaluation else "",
            "sample_rows": sample,
            "columns": list(sample[0].keys()) if sample else [],
            "allowed_modules": sorted(ALLOWED_MODULES),
            "error_key": ROW_ERROR_KEY,
        }
        return self._render_template(self.get_template_name(), context)

    async def synthesize(
        self,
        plan: TransformationPlan,
        previous_code: str | None = None,
        previous_evaluation: Evaluation | None = None,
        sample_rows: list[dict[str, Any]] | None = None,
    ) -> str:
        """Generate transformation code for ``plan``.

        Raises:
            InfrastructureError: If the oracle fails or returns no code
        """
        prompt = self.build_prompt(plan, previous_code, previous_evaluation, sample_rows)
        response = await self._ask_oracle(prompt)

        code = self._strip_code_fences(response)
        if not code:
            raise InfrastructureError("Code synthesis oracle returned no code")

        logger.debug(f"Synthesized {len(code)} characters of code for plan {plan.plan_id}")
        return code
