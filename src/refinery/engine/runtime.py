"""Wiring of the engine components from user settings."""

from __future__ import annotations

from typing import TYPE_CHECKING

from refinery.core.agents import CodeSynthesisAgent, EvaluationAgent
from refinery.core.client import RefineryClient
from refinery.core.policy import TransformationPolicy
from refinery.engine.iteration import IterationEngine
from refinery.engine.lifecycle import PlanLifecycleManager
from refinery.sandbox.container import DockerSandboxExecutor
from refinery.sandbox.executor import SandboxExecutor

if TYPE_CHECKING:
    from refinery.core.config import SettingsManager
    from refinery.database.services.container import ServiceContainer
    from refinery.jobs.executor import JobExecutor


def create_sandbox(settings: SettingsManager) -> SandboxExecutor:
    """Build the sandbox backend selected in settings."""
    limits = settings.get_sandbox_limits()
    if settings.get_sandbox_backend() == "docker":
        return DockerSandboxExecutor(
            timeout_seconds=limits["timeout_seconds"],
            memory_limit_mb=limits["memory_limit_mb"],
            image=settings.get_sandbox_image(),
        )
    return SandboxExecutor(
        timeout_seconds=limits["timeout_seconds"],
        memory_limit_mb=limits["memory_limit_mb"],
    )


def create_lifecycle_manager(
    services: ServiceContainer,
    settings: SettingsManager,
    job_executor: JobExecutor | None = None,
    client: RefineryClient | None = None,
) -> PlanLifecycleManager:
    """Build a PlanLifecycleManager with oracles, sandbox and policy from settings.

    Raises:
        ValidationError: If the policy override file is invalid
    """
    if client is None:
        client = RefineryClient(
            api_key=settings.get_api_key() or "",
            model=settings.get_current_model(),
            base_url=settings.get_base_url(),
        )

    policy = TransformationPolicy.load(settings.get_policy_path())
    limits = settings.get_sandbox_limits()
    sandbox = create_sandbox(settings)

    engine = IterationEngine(
        services,
        policy,
        synthesizer=CodeSynthesisAgent(client=client),
        evaluator=EvaluationAgent(client=client),
        sandbox=sandbox,
        sample_size=settings.get_sample_size(),
        max_retries=settings.get_step_max_retries(),
    )

    return PlanLifecycleManager(
        services,
        policy,
        engine,
        sandbox,
        job_executor=job_executor,
        production_timeout_seconds=limits["production_timeout_seconds"],
        production_memory_limit_mb=limits["memory_limit_mb"],
    )
