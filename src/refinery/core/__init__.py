"""Core components for Refinery."""

from refinery.core.client import RefineryClient
from refinery.core.config import SettingsManager
from refinery.core.policy import TransformationPolicy

__all__ = [
    "RefineryClient",
    "SettingsManager",
    "TransformationPolicy",
]
