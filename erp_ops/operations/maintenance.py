"""Read-only reports and ad-hoc queries."""

from __future__ import annotations

import csv
import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from erp_ops.config import FEE_NAME_TABLES, FORBIDDEN_QUERY_KEYWORDS, ORDER_TABLES, SYNC_TABLES
from erp_ops.core.database import Database, quote_identifier
from erp_ops.core.database_inspector import DatabaseInspector
from erp_ops.core.normalization import normalize_for_matching

logger = logging.getLogger(__name__)


class MaintenanceTool:
    """Database reports for operators."""

    def __init__(self, database: Database, inspector: Optional[DatabaseInspector] = None):
        """Initialize maintenance tool.

        Args:
            database: Target database
            inspector: DatabaseInspector instance
        """
        self.database = database
        self.inspector = inspector or DatabaseInspector(database)

    def get_table_counts(self) -> Dict[str, int]:
        """Row counts for every user table."""
        return self.inspector.get_table_counts()

    def get_statistics(self) -> Dict[str, Any]:
        """Row counts grouped into order tables, base-data tables and the rest.

        Returns:
            Dict with 'summary' and one dict of counts per group
        """
        counts = self.get_table_counts()
        base_names = {spec["name"] for spec in SYNC_TABLES}
        groups: Dict[str, Dict[str, int]] = {"order_tables": {}, "base_data": {}, "other": {}}
        for table, count in counts.items():
            if table in ORDER_TABLES:
                groups["order_tables"][table] = count
            elif table in base_names:
                groups["base_data"][table] = count
            else:
                groups["other"][table] = count

        return {
            "summary": {"tables": len(counts), "rows": sum(counts.values())},
            **groups,
        }

    # ------------------------------------------------------------------
    # Missing English names
    # ------------------------------------------------------------------

    def _has_columns(self, table: str, *columns: str) -> bool:
        if not self.inspector.has_table(table):
            logger.warning("Table %s not found, skipping", table)
            return False
        existing = self.inspector.get_columns(table)
        missing = [c for c in columns if c not in existing]
        if missing:
            logger.warning("Table %s lacks column(s) %s, skipping", table, ", ".join(missing))
            return False
        return True

    def missing_english_names(self) -> Dict[str, Any]:
        """Fee items and products whose English name is empty.

        Returns:
            Dict with 'fees' (per fee table: {'name', 'count'} rows),
            'products' (rows) and 'unique_fee_names' (one entry per
            normalized name with its sources and total count)
        """
        fees: Dict[str, List[Dict[str, Any]]] = {}
        merged: Dict[str, Dict[str, Any]] = {}

        for table, name_col, en_col in FEE_NAME_TABLES:
            if not self._has_columns(table, name_col, en_col):
                continue
            rows = self.database.fetch_all(
                f"SELECT {name_col} AS name, COUNT(*) AS count FROM {table} "
                f"WHERE {en_col} IS NULL OR TRIM({en_col}) = '' "
                f"GROUP BY {name_col} ORDER BY {name_col}"
            )
            fees[table] = rows
            for row in rows:
                key = normalize_for_matching(row["name"] or "")
                if not key:
                    continue
                entry = merged.setdefault(key, {"name": row["name"], "sources": [], "count": 0})
                if table not in entry["sources"]:
                    entry["sources"].append(table)
                entry["count"] += int(row["count"])

        products: List[Dict[str, Any]] = []
        if self._has_columns("products", "product_code", "product_name", "product_name_en"):
            products = self.database.fetch_all(
                "SELECT product_code, product_name FROM products "
                "WHERE product_name_en IS NULL OR TRIM(product_name_en) = '' "
                "ORDER BY product_code"
            )

        unique = sorted(merged.values(), key=lambda e: (-e["count"], e["name"]))
        return {"fees": fees, "products": products, "unique_fee_names": unique}

    # ------------------------------------------------------------------
    # Export / query
    # ------------------------------------------------------------------

    def export_table_to_csv(self, table: str, output_path: str) -> Dict[str, Any]:
        """Export a table to CSV.

        Returns:
            Dict with operation result
        """
        if not self.inspector.has_table(table):
            return {"success": False, "error": f"Unknown table: {table}"}

        columns = list(self.inspector.get_columns(table))
        rows = self.database.fetch_all(f"SELECT * FROM {quote_identifier(table)}")

        with open(output_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=columns)
            writer.writeheader()
            for record in rows:
                row = {}
                for col in columns:
                    value = record.get(col)
                    if isinstance(value, (datetime, date)):
                        value = value.isoformat()
                    row[col] = value
                writer.writerow(row)

        return {"success": True, "count": len(rows), "path": output_path}

    def execute_read_only_query(self, sql: str) -> Dict[str, Any]:
        """Execute a read-only SQL query.

        Args:
            sql: SQL query to execute (must be SELECT or WITH)

        Returns:
            Dict with columns and rows
        """
        sql_stripped = sql.strip().rstrip(";").strip()
        sql_upper = sql_stripped.upper()

        if not (sql_upper.startswith("SELECT") or sql_upper.startswith("WITH")):
            return {
                "success": False,
                "error": "Only SELECT queries are allowed",
            }

        # Word boundaries so UPDATED_AT does not match UPDATE
        for keyword in FORBIDDEN_QUERY_KEYWORDS:
            if re.search(r"\b" + keyword + r"\b", sql_upper):
                return {
                    "success": False,
                    "error": f"Query contains forbidden keyword: {keyword}",
                }

        if ";" in sql_stripped:
            return {
                "success": False,
                "error": "Multiple statements are not allowed",
            }

        try:
            with self.database.engine.connect() as conn:
                trans = conn.begin()
                try:
                    if self.database.is_postgresql:
                        conn.exec_driver_sql("SET TRANSACTION READ ONLY")
                    result = conn.execution_options(no_parameters=True).exec_driver_sql(sql_stripped)
                    columns = list(result.keys())
                    rows = [list(row) for row in result]
                finally:
                    trans.rollback()
            return {
                "success": True,
                "columns": columns,
                "rows": rows,
                "row_count": len(rows),
            }
        except SQLAlchemyError as e:
            logger.error("Read-only query failed: %s", e)
            return {
                "success": False,
                "error": str(getattr(e, "orig", None) or e),
            }
