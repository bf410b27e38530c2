"""Evaluation oracle adapter.

Scores a sandbox run against the plan's intent. The oracle is asked for a
JSON verdict; anything it returns that cannot be read as one falls back to a
conservative score instead of failing the iteration.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from refinery.core.agents.shared.base_agent import BaseAgent
from refinery.error_handling import EvaluationParseFailure

if TYPE_CHECKING:
    from refinery.database.models.plan import TransformationPlan
    from refinery.sandbox.executor import SandboxResult

logger = logging.getLogger(__name__)

FALLBACK_ACCURACY = 0.5
NOTES_EXCERPT_CHARS = 200
PREVIEW_ROWS = 5

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class Evaluation:
    """Verdict on one iteration."""

    accuracy: float | None
    meets_threshold: bool
    issues: list[str] = field(default_factory=list)
    improvements: list[str] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Evaluation:
        return cls(
            accuracy=data.get("accuracy"),
            meets_threshold=bool(data.get("meets_threshold")),
            issues=list(data.get("issues") or []),
            improvements=list(data.get("improvements") or []),
            notes=data.get("notes") or "",
        )


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value]
    raise EvaluationParseFailure(f"Expected a list of strings, got {type(value).__name__}")


def parse_evaluation(text: str, threshold: float) -> Evaluation:
    """Parse the first JSON object in ``text`` into an Evaluation.

    Raises:
        EvaluationParseFailure: If no usable verdict can be read
    """
    match = _JSON_OBJECT.search(text)
    if not match:
        raise EvaluationParseFailure("No JSON object in evaluation response")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise EvaluationParseFailure(f"Invalid JSON in evaluation response: {e}") from e

    if not isinstance(data, dict) or "accuracy" not in data:
        raise EvaluationParseFailure("Evaluation response has no accuracy")

    try:
        accuracy = float(data["accuracy"])
    except (TypeError, ValueError) as e:
        raise EvaluationParseFailure(f"Accuracy is not a number: {data['accuracy']!r}") from e
    if accuracy != accuracy:
        raise EvaluationParseFailure("Accuracy is NaN")

    accuracy = min(1.0, max(0.0, accuracy))
    return Evaluation(
        accuracy=accuracy,
        meets_threshold=accuracy >= threshold,
        issues=_string_list(data.get("issues")),
        improvements=_string_list(data.get("improvements")),
        notes=str(data.get("notes") or ""),
    )


class EvaluationAgent(BaseAgent):
    """Asks the evaluation oracle to score before/after samples."""

    SYSTEM_MESSAGE = (
        "You are a strict data quality reviewer. You judge whether a data "
        "transformation did what was asked and respond with JSON only."
    )

    def get_template_directory(self) -> Path:
        return Path(__file__).parent / "templates"

    def build_prompt(
        self, result: SandboxResult, plan: TransformationPlan, threshold: float
    ) -> str:
        output = result.output or {}
        return self._render_template(
            self.get_template_name(),
            {
                "plan": plan,
                "threshold": threshold,
                "stats": output.get("stats") or {},
                "sample_before": (output.get("sample_before") or [])[:PREVIEW_ROWS],
                "sample_after": (output.get("sample_after") or [])[:PREVIEW_ROWS],
            },
        )

    async def evaluate(
        self, result: SandboxResult, plan: TransformationPlan, threshold: float
    ) -> Evaluation:
        """Score a sandbox run.

        A failed run scores 0 without consulting the oracle. An unreadable
        oracle response scores FALLBACK_ACCURACY and never meets the
        threshold.

        Raises:
            InfrastructureError: If the oracle itself cannot be reached
        """
        if not result.success:
            return Evaluation(
                accuracy=0.0,
                meets_threshold=False,
                issues=[result.error or "Execution failed"],
                improvements=["Fix the execution error"],
                notes="Code execution failed",
            )

        response = await self._ask_oracle(self.build_prompt(result, plan, threshold))

        try:
            return parse_evaluation(response, threshold)
        except EvaluationParseFailure as e:
            logger.warning(f"Falling back to default evaluation for plan {plan.plan_id}: {e}")
            return Evaluation(
                accuracy=FALLBACK_ACCURACY,
                meets_threshold=False,
                issues=["Could not parse evaluation response"],
                improvements=["Return the evaluation as a single JSON object"],
                notes=response[:NOTES_EXCERPT_CHARS],
            )
