"""Configuration management for Refinery."""

import json
import logging
import os
from pathlib import Path
from typing import Any

from refinery.error_handling import ValidationError
from refinery.utils.validation import validate_api_key, validate_url

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 1000
DEFAULT_STEP_MAX_RETRIES = 3
DEFAULT_SANDBOX_TIMEOUT_SECONDS = 60
DEFAULT_SANDBOX_MEMORY_LIMIT_MB = 512
DEFAULT_PRODUCTION_TIMEOUT_SECONDS = 600
DEFAULT_SANDBOX_BACKEND = "docker"
DEFAULT_SANDBOX_IMAGE = "python:3.12-slim"
SANDBOX_BACKENDS = ("docker", "subprocess")

_POSITIVE_INT_KEYS = (
    "sampleSize",
    "stepMaxRetries",
    "sandboxTimeoutSeconds",
    "sandboxMemoryLimitMb",
    "productionTimeoutSeconds",
)


class SettingsManager:
    """Manages user settings and configuration.

    Environment variables take precedence over the settings file.
    """

    def __init__(self, settings_dir: str | None = None):
        self.settings_dir = Path(settings_dir or Path.home() / ".refinery")
        self.settings_file = self.settings_dir / "user-settings.json"
        self.settings_dir.mkdir(parents=True, exist_ok=True)

    def load_user_settings(self) -> dict[str, Any]:
        """Load user settings from file."""
        if not self.settings_file.exists():
            return {}

        try:
            with open(self.settings_file, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable settings file {self.settings_file}: {e}")
            return {}

    def save_user_settings(self, settings: dict[str, Any]) -> None:
        """Save user settings to file."""
        try:
            with open(self.settings_file, "w", encoding="utf-8") as f:
                json.dump(settings, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save settings: {e}")

    def update_user_setting(self, key: str, value: Any) -> None:
        """Update a single user setting with validation.

        Raises:
            ValidationError: If the value is invalid for the given key
        """
        if key == "apiKey":
            value = validate_api_key(value)
        elif key == "baseURL":
            value = validate_url(value)
        elif key == "sandboxBackend" and value not in SANDBOX_BACKENDS:
            raise ValidationError(
                f"sandboxBackend must be one of: {', '.join(SANDBOX_BACKENDS)}"
            )
        elif key in (
            "model",
            "systemDatabasePath",
            "dataDatabasePath",
            "policyPath",
            "sandboxImage",
        ):
            if not value or not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{key} must be a non-empty string")
            value = value.strip()
        elif key in _POSITIVE_INT_KEYS and (not isinstance(value, int) or value < 1):
            raise ValidationError(f"{key} must be a positive integer, got {value!r}")

        settings = self.load_user_settings()
        settings[key] = value
        self.save_user_settings(settings)

    def _get(self, env_var: str, key: str, default: Any = None) -> Any:
        value = os.getenv(env_var)
        if value and value.strip():
            return value.strip()

        value = self.load_user_settings().get(key)
        if value not in (None, ""):
            return value
        return default

    def _get_int(self, env_var: str, key: str, default: int) -> int:
        value = self._get(env_var, key, default)
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid integer for {key}: {value!r}, using {default}")
            return default
        return parsed if parsed > 0 else default

    def get_api_key(self) -> str | None:
        """Get API key from environment or settings."""
        return self._get("REFINERY_API_KEY", "apiKey")

    def get_base_url(self) -> str:
        """Get base URL, defaulting to the OpenAI endpoint."""
        return self._get("REFINERY_BASE_URL", "baseURL", "https://api.openai.com/v1")

    def get_current_model(self) -> str:
        """Get current model, defaulting to gpt-4o."""
        return self._get("REFINERY_MODEL", "model", "gpt-4o")

    def get_system_database_path(self) -> str:
        """Path of the database holding plans, iterations, approvals and jobs."""
        return self._get(
            "REFINERY_SYSTEM_DATABASE_PATH",
            "systemDatabasePath",
            str(Path(".refinery") / "refinery_system.db"),
        )

    def get_data_database_path(self) -> str:
        """Path of the database holding the governed data assets."""
        return self._get(
            "REFINERY_DATA_DATABASE_PATH",
            "dataDatabasePath",
            str(Path(".refinery") / "refinery_data.db"),
        )

    def get_policy_path(self) -> str | None:
        """Optional YAML file overriding the transformation policy table."""
        return self._get("REFINERY_POLICY_PATH", "policyPath")

    def get_sample_size(self) -> int:
        return self._get_int("REFINERY_SAMPLE_SIZE", "sampleSize", DEFAULT_SAMPLE_SIZE)

    def get_step_max_retries(self) -> int:
        return self._get_int(
            "REFINERY_STEP_MAX_RETRIES", "stepMaxRetries", DEFAULT_STEP_MAX_RETRIES
        )

    def get_sandbox_limits(self) -> dict[str, int]:
        """Resource limits for sample runs and production runs."""
        return {
            "timeout_seconds": self._get_int(
                "REFINERY_SANDBOX_TIMEOUT",
                "sandboxTimeoutSeconds",
                DEFAULT_SANDBOX_TIMEOUT_SECONDS,
            ),
            "memory_limit_mb": self._get_int(
                "REFINERY_SANDBOX_MEMORY_MB",
                "sandboxMemoryLimitMb",
                DEFAULT_SANDBOX_MEMORY_LIMIT_MB,
            ),
            "production_timeout_seconds": self._get_int(
                "REFINERY_PRODUCTION_TIMEOUT",
                "productionTimeoutSeconds",
                DEFAULT_PRODUCTION_TIMEOUT_SECONDS,
            ),
        }

    def get_sandbox_backend(self) -> str:
        """Where generated code runs: a Docker container or a local process."""
        backend = str(
            self._get("REFINERY_SANDBOX_BACKEND", "sandboxBackend", DEFAULT_SANDBOX_BACKEND)
        ).lower()
        if backend not in SANDBOX_BACKENDS:
            logger.warning(
                f"Unknown sandbox backend {backend!r}, using {DEFAULT_SANDBOX_BACKEND}"
            )
            return DEFAULT_SANDBOX_BACKEND
        return backend

    def get_sandbox_image(self) -> str:
        return self._get("REFINERY_SANDBOX_IMAGE", "sandboxImage", DEFAULT_SANDBOX_IMAGE)

    def get_verbose_mode(self) -> bool:
        """Get verbose/debug mode setting.

        Accepts "1", "true", "yes" (case-insensitive) from REFINERY_VERBOSE.
        """
        verbose_env = os.getenv("REFINERY_VERBOSE", "").lower()
        if verbose_env in ("1", "true", "yes"):
            return True

        return bool(self.load_user_settings().get("verbose", False))
