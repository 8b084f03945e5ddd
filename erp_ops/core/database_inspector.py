"""Database inspection utilities for migrations and environment comparison."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import inspect

from erp_ops.core.database import Database, quote_identifier

logger = logging.getLogger(__name__)


class DatabaseInspector:
    """Inspects database structure and provides row counts."""

    def __init__(self, database: Database):
        """Initialize inspector.

        Args:
            database: Target database wrapper
        """
        self.database = database

    def _inspector(self):
        # Not cached: reflection must see DDL applied since the last call
        return inspect(self.database.engine)

    def list_tables(self) -> List[str]:
        """Return user tables (system and pg_* tables excluded), sorted."""
        names = self._inspector().get_table_names()
        return sorted(n for n in names if not n.startswith(("pg_", "sqlite_")))

    def has_table(self, table: str) -> bool:
        return self._inspector().has_table(table)

    def get_columns(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Get column definitions for a table.

        Returns:
            Dict mapping column name to {'type', 'nullable', 'default'}
        """
        columns = {}
        for col in self._inspector().get_columns(table):
            columns[col["name"]] = {
                "type": str(col["type"]),
                "nullable": col.get("nullable", True),
                "default": col.get("default"),
            }
        return columns

    def has_column(self, table: str, column: str) -> bool:
        return column in self.get_columns(table)

    def get_indexes(self, table: str) -> Dict[str, List[str]]:
        """Get index names and their columns for a table."""
        indexes = {}
        for index in self._inspector().get_indexes(table):
            indexes[index["name"]] = [c for c in index.get("column_names", []) if c]
        return indexes

    def get_primary_key(self, table: str) -> List[str]:
        constraint = self._inspector().get_pk_constraint(table)
        return constraint.get("constrained_columns") or []

    def get_table_structure(self, table: str) -> Dict[str, Any]:
        """Columns and indexes of one table, the unit compared across environments."""
        return {
            "columns": self.get_columns(table),
            "indexes": self.get_indexes(table),
        }

    def count_rows(self, table: str) -> int:
        return int(self.database.fetch_value(f"SELECT COUNT(*) FROM {quote_identifier(table)}"))

    def get_table_counts(self, tables: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """Get row counts for tables.

        Args:
            tables: Tables to count (all user tables when omitted)

        Returns:
            Dict mapping table name to row count; -1 when the table is missing
        """
        existing = set(self.list_tables())
        counts = {}
        for table in tables if tables is not None else sorted(existing):
            if table not in existing:
                counts[table] = -1
                continue
            counts[table] = self.count_rows(table)
        return counts

    def missing_tables(self, expected: Iterable[str]) -> List[str]:
        """Expected tables the database does not have."""
        existing = set(self.list_tables())
        return [t for t in expected if t not in existing]


def compare_structures(
    source: Dict[str, Any], target: Dict[str, Any]
) -> Dict[str, List[str]]:
    """Compare two table structures from :meth:`DatabaseInspector.get_table_structure`.

    Returns:
        Dict with 'missing_columns' / 'extra_columns' (columns the target lacks
        or has in addition) and 'missing_indexes' / 'extra_indexes'
    """
    source_cols = set(source.get("columns", {}))
    target_cols = set(target.get("columns", {}))
    source_idx = set(source.get("indexes", {}))
    target_idx = set(target.get("indexes", {}))

    return {
        "missing_columns": sorted(source_cols - target_cols),
        "extra_columns": sorted(target_cols - source_cols),
        "missing_indexes": sorted(source_idx - target_idx),
        "extra_indexes": sorted(target_idx - source_idx),
    }
