"""Shared components for Refinery oracle agents."""

from .base_agent import AgentError, BaseAgent

__all__ = ["AgentError", "BaseAgent"]
