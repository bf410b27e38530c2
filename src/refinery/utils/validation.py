"""Input validation utilities for Refinery."""

import re

from refinery.error_handling import ValidationError

_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_sql_identifier(name: str, context: str = "identifier") -> None:
    """Validate a SQL identifier (table/column name).

    Args:
        name: The identifier to validate
        context: Context for error messages (e.g., "table name", "column name")

    Raises:
        ValidationError: If the identifier is invalid

    Rules:
        - Must not be empty
        - Must start with a letter or underscore
        - Can only contain letters, numbers, and underscores
        - Must be 1-128 characters
    """
    if not name:
        raise ValidationError(f"Invalid {context}: cannot be empty")

    if len(name) > 128:
        raise ValidationError(
            f"Invalid {context} '{name}': must be 128 characters or less"
        )

    if not _IDENTIFIER.match(name):
        raise ValidationError(
            f"Invalid {context} '{name}': must start with a letter or underscore "
            "and contain only letters, numbers, and underscores"
        )


def quote_sql_identifier(name: str) -> str:
    """Quote a SQL identifier for safe use in queries.

    DuckDB uses double quotes for identifiers; embedded quotes are doubled.
    """
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def validate_asset_name(name: str) -> None:
    """Validate a data asset reference of the form ``table`` or ``schema.table``.

    Raises:
        ValidationError: If any part of the reference is invalid
    """
    if not name:
        raise ValidationError("Invalid asset name: cannot be empty")

    parts = name.split(".")
    if len(parts) > 2:
        raise ValidationError(
            f"Invalid asset name '{name}': expected 'table' or 'schema.table'"
        )
    for part in parts:
        validate_sql_identifier(part, context="asset name")


def quote_asset_name(name: str) -> str:
    """Validate and quote an asset reference for use in SQL."""
    validate_asset_name(name)
    return ".".join(quote_sql_identifier(part) for part in name.split("."))


def validate_api_key(api_key: str) -> str:
    """Validate an API key.

    Returns:
        Stripped API key

    Raises:
        ValidationError: If the API key is invalid
    """
    if not api_key:
        raise ValidationError("API key cannot be empty")

    api_key = api_key.strip()

    if not api_key:
        raise ValidationError("API key cannot be only whitespace")

    if len(api_key) < 10:
        raise ValidationError(
            f"API key too short ({len(api_key)} characters). "
            "Expected at least 10 characters."
        )

    return api_key


def validate_url(url: str) -> str:
    """Validate a URL.

    Returns:
        Validated URL

    Raises:
        ValidationError: If the URL is invalid
    """
    if not url:
        raise ValidationError("URL cannot be empty")

    url = url.strip()

    if not url:
        raise ValidationError("URL cannot be only whitespace")

    if not (url.startswith("http://") or url.startswith("https://")):
        raise ValidationError(
            f"Invalid URL '{url}': must start with http:// or https://"
        )

    if not re.match(r"^https?://[^\s/$.?#].[^\s]*$", url, re.IGNORECASE):
        raise ValidationError(f"Invalid URL format: {url}")

    return url


def require_text(value: str | None, field_name: str) -> str:
    """Return ``value`` stripped, or raise if it is missing or blank."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required")
    return str(value).strip()
