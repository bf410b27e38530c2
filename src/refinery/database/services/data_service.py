"""Data service for sample and production access to governed assets.

Assets are tables in the data database, referenced as ``table`` or
``schema.table``. All identifiers are validated and quoted before they are
interpolated into SQL.
"""

from __future__ import annotations

import logging
from typing import Any

from refinery.database.base import DatabaseError
from refinery.database.services.base import BaseService
from refinery.utils.validation import (
    quote_asset_name,
    quote_sql_identifier,
    validate_asset_name,
)

logger = logging.getLogger(__name__)


def _split_asset(asset: str) -> tuple[str, str]:
    validate_asset_name(asset)
    if "." in asset:
        schema, table = asset.split(".", 1)
        return schema, table
    return "main", asset


class DataService(BaseService):
    """Service for reading and rewriting assets in the data database."""

    def asset_exists(self, asset: str) -> bool:
        schema, table = _split_asset(asset)
        result = self.db_manager.data_query(
            """
            SELECT COUNT(*) AS count FROM information_schema.tables
            WHERE table_schema = ? AND table_name = ?
            """,
            [schema, table],
        )
        return int(result.first()["count"]) > 0

    def get_columns(self, asset: str) -> list[str]:
        """Column names of an asset in table order.

        Raises:
            DatabaseError: If the asset does not exist
        """
        schema, table = _split_asset(asset)
        result = self.db_manager.data_query(
            """
            SELECT column_name FROM information_schema.columns
            WHERE table_schema = ? AND table_name = ?
            ORDER BY ordinal_position
            """,
            [schema, table],
        )
        if result.empty():
            raise DatabaseError(f"Asset {asset} does not exist")
        return [row["column_name"] for row in result.rows]

    def get_sample_rows(self, asset: str, limit: int) -> list[dict[str, Any]]:
        """Return up to ``limit`` rows of an asset.

        Raises:
            DatabaseError: If the asset cannot be read
        """
        sql = f"SELECT * FROM {quote_asset_name(asset)} LIMIT ?"
        return self.db_manager.data_query(sql, [int(limit)]).rows

    def read_all_rows(self, asset: str) -> list[dict[str, Any]]:
        """Return every row of an asset."""
        return self.db_manager.data_query(f"SELECT * FROM {quote_asset_name(asset)}").rows

    def count_rows(self, asset: str) -> int:
        result = self.db_manager.data_query(
            f"SELECT COUNT(*) AS count FROM {quote_asset_name(asset)}"
        )
        return int(result.first()["count"])

    def replace_rows(self, asset: str, rows: list[dict[str, Any]]) -> int:
        """Replace the contents of an asset with ``rows`` in one transaction.

        Values are matched to the asset's columns by name; keys the asset does
        not have are ignored and missing keys are written as NULL.

        Returns:
            Number of rows written
        """
        columns = self.get_columns(asset)
        quoted_asset = quote_asset_name(asset)
        column_list = ", ".join(quote_sql_identifier(column) for column in columns)
        placeholders = ", ".join("?" for _ in columns)

        extra = {key for row in rows for key in row} - set(columns)
        if extra:
            logger.warning(
                f"Ignoring keys not present in {asset}: {', '.join(sorted(extra))}"
            )

        params_seq = [[row.get(column) for column in columns] for row in rows]
        with self.db_manager.data_transaction():
            self.db_manager.data_execute(f"DELETE FROM {quoted_asset}")
            self.db_manager.data_executemany(
                f"INSERT INTO {quoted_asset} ({column_list}) VALUES ({placeholders})",
                params_seq,
            )

        logger.info(f"Replaced contents of {asset} with {len(rows)} rows")
        return len(rows)

    def snapshot_table(self, asset: str, snapshot_name: str) -> str:
        """Copy an asset into a snapshot table next to it.

        Returns:
            The snapshot's asset reference
        """
        schema, _ = _split_asset(asset)
        snapshot_asset = snapshot_name if schema == "main" else f"{schema}.{snapshot_name}"
        self.db_manager.data_execute(
            f"CREATE OR REPLACE TABLE {quote_asset_name(snapshot_asset)} AS "
            f"SELECT * FROM {quote_asset_name(asset)}"
        )
        logger.info(f"Snapshot of {asset} saved as {snapshot_asset}")
        return snapshot_asset

    def restore_snapshot(self, asset: str, snapshot_asset: str) -> int:
        """Replace an asset's contents with a snapshot taken earlier.

        Returns:
            Number of rows restored
        """
        quoted_asset = quote_asset_name(asset)
        quoted_snapshot = quote_asset_name(snapshot_asset)
        with self.db_manager.data_transaction():
            self.db_manager.data_execute(f"DELETE FROM {quoted_asset}")
            self.db_manager.data_execute(
                f"INSERT INTO {quoted_asset} SELECT * FROM {quoted_snapshot}"
            )
        restored = self.count_rows(asset)
        logger.info(f"Restored {asset} from {snapshot_asset} ({restored} rows)")
        return restored
