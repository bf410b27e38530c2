"""Isolated execution of generated transformation code."""

from refinery.sandbox.container import DockerSandboxExecutor
from refinery.sandbox.executor import SandboxExecutor, SandboxResult

__all__ = ["DockerSandboxExecutor", "SandboxExecutor", "SandboxResult"]
