"""Transformation policy table.

Maps each transformation type to whether it goes through the convergence
loop and how risky it is to run against production data. The packaged
defaults live in ``transformation_policy.yaml``; an override file is merged
over them so new types can be added or opted out without code changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from refinery.error_handling import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_POLICY_FILE = Path(__file__).parent / "transformation_policy.yaml"
RISK_LEVELS = ("low", "medium", "high", "critical")


@dataclass(frozen=True)
class TransformationTypePolicy:
    """Policy entry for one transformation type."""

    name: str
    requires_iteration: bool = True
    risk_level: str = "medium"
    description: str = ""

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> TransformationTypePolicy:
        risk_level = str(data.get("risk_level", "medium")).lower()
        if risk_level not in RISK_LEVELS:
            raise ValidationError(
                f"Invalid risk_level '{risk_level}' for transformation type "
                f"'{name}'. Must be one of: {', '.join(RISK_LEVELS)}"
            )
        return cls(
            name=name,
            requires_iteration=bool(data.get("requires_iteration", True)),
            risk_level=risk_level,
            description=str(data.get("description", "")),
        )


class TransformationPolicy:
    """Lookup table of transformation type policies."""

    def __init__(self, entries: dict[str, TransformationTypePolicy]):
        self._entries = dict(entries)

    @classmethod
    def load(cls, override_path: str | Path | None = None) -> TransformationPolicy:
        """Load the packaged policy, merging an optional override file over it."""
        raw = cls._read_yaml(DEFAULT_POLICY_FILE)
        if override_path:
            overrides = cls._read_yaml(Path(override_path))
            for name, data in overrides.items():
                merged = dict(raw.get(name) or {})
                merged.update(data or {})
                raw[name] = merged
            logger.info(f"Loaded transformation policy overrides from {override_path}")

        return cls(
            {
                name: TransformationTypePolicy.from_dict(name, data or {})
                for name, data in raw.items()
            }
        )

    @classmethod
    def from_mapping(cls, mapping: dict[str, dict[str, Any]]) -> TransformationPolicy:
        return cls(
            {
                name: TransformationTypePolicy.from_dict(name, data or {})
                for name, data in mapping.items()
            }
        )

    @staticmethod
    def _read_yaml(path: Path) -> dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValidationError(f"Failed to load policy file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValidationError(f"Policy file {path} must contain a mapping")
        return data

    def get(self, transformation_type: str) -> TransformationTypePolicy:
        try:
            return self._entries[transformation_type]
        except KeyError:
            known = ", ".join(sorted(self._entries))
            raise ValidationError(
                f"Unknown transformation type '{transformation_type}'. "
                f"Known types: {known}"
            ) from None

    def is_known(self, transformation_type: str) -> bool:
        return transformation_type in self._entries

    def requires_iteration(self, transformation_type: str) -> bool:
        return self.get(transformation_type).requires_iteration

    def risk_level(self, transformation_type: str) -> str:
        return self.get(transformation_type).risk_level

    def types(self) -> list[str]:
        return sorted(self._entries)
