"""Utility modules for Refinery."""

from refinery.utils.validation import (
    quote_asset_name,
    quote_sql_identifier,
    require_text,
    validate_asset_name,
)

__all__ = [
    "quote_asset_name",
    "quote_sql_identifier",
    "require_text",
    "validate_asset_name",
]
