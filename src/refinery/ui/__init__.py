"""User interface components for Refinery."""

from refinery.ui.cli import cli
from refinery.ui.console import PlanConsole

__all__ = [
    "cli",
    "PlanConsole",
]
