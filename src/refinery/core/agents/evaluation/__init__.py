"""Evaluation agent for transformation iterations."""

from refinery.core.agents.evaluation.evaluation import (
    Evaluation,
    EvaluationAgent,
    parse_evaluation,
)

__all__ = ["Evaluation", "EvaluationAgent", "parse_evaluation"]
