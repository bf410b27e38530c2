"""Code synthesis agent for transformation plans."""

from refinery.core.agents.code_synthesis.code_synthesis import CodeSynthesisAgent

__all__ = ["CodeSynthesisAgent"]
