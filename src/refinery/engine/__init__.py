"""Transformation plan engine: iteration loop and plan lifecycle."""

from refinery.engine.iteration import IterationEngine, PlanCancelled
from refinery.engine.lifecycle import PlanLifecycleManager
from refinery.engine.preview import SampleDiff, diff_samples
from refinery.engine.risk import RiskAssessment, assess_risk
from refinery.engine.runtime import create_lifecycle_manager
from refinery.engine.steps import StepRunner

__all__ = [
    "IterationEngine",
    "PlanCancelled",
    "PlanLifecycleManager",
    "RiskAssessment",
    "SampleDiff",
    "StepRunner",
    "assess_risk",
    "create_lifecycle_manager",
    "diff_samples",
]
