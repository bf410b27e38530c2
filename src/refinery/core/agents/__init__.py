"""Oracle agents used by the iteration engine."""

from refinery.core.agents.code_synthesis import CodeSynthesisAgent
from refinery.core.agents.evaluation import Evaluation, EvaluationAgent
from refinery.core.agents.shared import AgentError, BaseAgent

__all__ = [
    "AgentError",
    "BaseAgent",
    "CodeSynthesisAgent",
    "Evaluation",
    "EvaluationAgent",
]
