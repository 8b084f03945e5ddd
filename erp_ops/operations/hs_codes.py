"""HS code analysis, ten-digit normalization and tariff matching."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from erp_ops.config import (
    DEFAULT_VAT_RATE,
    GENERIC_ORIGIN_CODES,
    HS_CODE_COLUMNS,
    HS_CODE_LENGTH,
    MATCH_CONFIDENCE,
)
from erp_ops.core.database import Database
from erp_ops.core.database_inspector import DatabaseInspector
from erp_ops.core.normalization import hs_code_digits, normalize_hs_code

logger = logging.getLogger(__name__)

TARIFF_COLUMNS = (
    "hs_code, goods_description, goods_description_cn, material, duty_rate, "
    "vat_rate, anti_dumping_rate, countervailing_rate, unit_code, unit_name, "
    "origin_country_code"
)


def _to_float(value: Any, default: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if result else default


def convert_tariff_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Turn a tariff_rates row into the match payload.

    Missing rates default to 0, a missing VAT rate to the standard rate.
    """
    return {
        "hs_code": normalize_hs_code(row.get("hs_code")),
        "product_name": row.get("goods_description_cn") or row.get("goods_description"),
        "product_name_en": row.get("goods_description"),
        "material": row.get("material"),
        "duty_rate": _to_float(row.get("duty_rate"), 0.0),
        "vat_rate": _to_float(row.get("vat_rate"), DEFAULT_VAT_RATE),
        "anti_dumping_rate": _to_float(row.get("anti_dumping_rate"), 0.0),
        "countervailing_rate": _to_float(row.get("countervailing_rate"), 0.0),
        "unit_code": row.get("unit_code"),
        "unit_name": row.get("unit_name"),
        "origin_country_code": row.get("origin_country_code") or "",
    }


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class HsCodeAnalyzer:
    """Coverage statistics for tariff_rates HS codes."""

    def __init__(self, database: Database):
        self.database = database

    def report(self, country: Optional[str] = None, top: int = 20) -> Dict[str, Any]:
        """Summarize code lengths and ten-digit coverage.

        Args:
            country: Restrict the chapter breakdown to one origin country code
            top: Number of countries listed

        Returns:
            Dict with 'totals', 'by_country' and 'chapters_needing_update'
        """
        totals = self.database.fetch_one(
            "SELECT COUNT(*) AS total, "
            "COUNT(DISTINCT hs_code) AS unique_codes, "
            "SUM(CASE WHEN hs_code_10 IS NOT NULL AND hs_code_10 <> '' THEN 1 ELSE 0 END) AS with_10, "
            "SUM(CASE WHEN hs_code_10 IS NULL OR hs_code_10 = '' THEN 1 ELSE 0 END) AS without_10, "
            "SUM(CASE WHEN LENGTH(hs_code) = 8 THEN 1 ELSE 0 END) AS len_8, "
            "SUM(CASE WHEN LENGTH(hs_code) = 10 THEN 1 ELSE 0 END) AS len_10, "
            "SUM(CASE WHEN LENGTH(hs_code) < 8 THEN 1 ELSE 0 END) AS shorter "
            "FROM tariff_rates"
        ) or {}
        totals = {k: int(v or 0) for k, v in totals.items()}

        by_country = self.database.fetch_all(
            "SELECT COALESCE(origin_country_code, '') AS country, COUNT(*) AS total, "
            "SUM(CASE WHEN hs_code_10 IS NOT NULL AND hs_code_10 <> '' THEN 1 ELSE 0 END) AS with_10 "
            "FROM tariff_rates GROUP BY COALESCE(origin_country_code, '') "
            "ORDER BY total DESC LIMIT ?",
            top,
        )

        sql = (
            "SELECT SUBSTR(hs_code, 1, 2) AS chapter, COUNT(*) AS missing "
            "FROM tariff_rates WHERE (hs_code_10 IS NULL OR hs_code_10 = '')"
        )
        params: List[Any] = []
        if country:
            sql += " AND origin_country_code = ?"
            params.append(country)
        sql += " GROUP BY SUBSTR(hs_code, 1, 2) ORDER BY missing DESC, chapter"
        chapters = self.database.fetch_all(sql, *params)

        return {
            "totals": totals,
            "by_country": [
                {"country": r["country"] or "-", "total": int(r["total"]),
                 "with_10": int(r["with_10"] or 0),
                 "without_10": int(r["total"]) - int(r["with_10"] or 0)}
                for r in by_country
            ],
            "chapters_needing_update": [
                {"chapter": r["chapter"], "missing": int(r["missing"])} for r in chapters
            ],
        }


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

class HsCodeNormalizer:
    """Pads stored HS codes to ten digits."""

    def __init__(
        self,
        database: Database,
        columns: Sequence[Tuple[str, str]] = tuple(HS_CODE_COLUMNS),
        inspector: Optional[DatabaseInspector] = None,
    ):
        self.database = database
        self.columns = list(columns)
        self.inspector = inspector or DatabaseInspector(database)

    def _existing_columns(self) -> List[Tuple[str, str]]:
        existing = []
        for table, column in self.columns:
            if self.inspector.has_table(table) and self.inspector.has_column(table, column):
                existing.append((table, column))
            else:
                logger.warning("Skipping %s.%s (not present)", table, column)
        return existing

    def _changes_for(self, runner, table: str, column: str) -> List[Tuple[str, str, int]]:
        rows = runner.fetch_all(
            f"SELECT {column} AS value, COUNT(*) AS n FROM {table} "
            f"WHERE {column} IS NOT NULL AND {column} <> '' GROUP BY {column}"
        )
        changes = []
        for row in rows:
            old = row["value"]
            new = normalize_hs_code(old)
            # Values without any digit are left as they are
            if new is not None and new != old:
                changes.append((old, new, int(row["n"])))
        return changes

    def plan(self) -> List[Dict[str, Any]]:
        """Rows per column that would change.

        Returns:
            List of dicts with 'table', 'column', 'rows', 'samples' (old, new)
        """
        result = []
        for table, column in self._existing_columns():
            changes = self._changes_for(self.database, table, column)
            result.append({
                "table": table,
                "column": column,
                "rows": sum(n for _, _, n in changes),
                "samples": [(old, new) for old, new, _ in changes[:5]],
            })
        return result

    def apply(self) -> Dict[str, int]:
        """Normalize every configured column in one transaction.

        Returns:
            Dict mapping 'table.column' to updated row count
        """
        updated: Dict[str, int] = {}
        columns = self._existing_columns()
        with self.database.transaction() as tx:
            for table, column in columns:
                count = 0
                for old, new, _ in self._changes_for(tx, table, column):
                    count += tx.execute(
                        f"UPDATE {table} SET {column} = ? WHERE {column} = ?", new, old
                    )
                updated[f"{table}.{column}"] = count
                logger.info("Normalized %s.%s: %d rows", table, column, count)
        return updated

    def verify(self) -> List[Dict[str, Any]]:
        """Count ten-digit values per column after normalization."""
        result = []
        for table, column in self._existing_columns():
            row = self.database.fetch_one(
                f"SELECT COUNT(*) AS total, "
                f"SUM(CASE WHEN LENGTH({column}) = {HS_CODE_LENGTH} THEN 1 ELSE 0 END) AS ten_digit "
                f"FROM {table} WHERE {column} IS NOT NULL AND {column} <> ''"
            )
            total = int(row["total"] or 0)
            ten = int(row["ten_digit"] or 0)
            result.append({
                "table": table, "column": column, "total": total,
                "ten_digit": ten, "other": total - ten,
            })
        return result

    def sync_hs_code_10(self, country: str = "CN", dry_run: bool = True, preview: int = 20) -> Dict[str, Any]:
        """Copy ten-digit hs_code values into an empty hs_code_10.

        Only active tariff rows of *country* are touched.

        Returns:
            Dict with 'candidates' (count), 'preview' rows, 'updated' and 'dry_run'
        """
        where = (
            "origin_country_code = ? AND LENGTH(hs_code) = 10 "
            "AND (hs_code_10 IS NULL OR hs_code_10 = '') AND is_active = 1"
        )
        candidates = int(self.database.fetch_value(
            f"SELECT COUNT(*) FROM tariff_rates WHERE {where}", country
        ) or 0)
        rows = self.database.fetch_all(
            f"SELECT id, hs_code, hs_code_10, goods_description FROM tariff_rates "
            f"WHERE {where} ORDER BY hs_code LIMIT ?",
            country, preview,
        )
        updated = 0
        if not dry_run and candidates:
            with self.database.transaction() as tx:
                updated = tx.execute(
                    f"UPDATE tariff_rates SET hs_code_10 = hs_code WHERE {where}", country
                )
        return {"candidates": candidates, "preview": rows, "updated": updated, "dry_run": dry_run}


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

class HsCodeMatcher:
    """Finds the tariff row for a cargo item.

    Cascade: exact code, 8-digit prefix, 6-digit prefix, learned history,
    then a name/material search. The first strategy that yields a row wins.
    """

    def __init__(self, database: Database, confidence: Optional[Dict[str, int]] = None):
        self.database = database
        self.confidence = confidence or MATCH_CONFIDENCE

    def _lookup(self, condition: str, params: Sequence[Any], origin: Optional[str],
                order_by: str = "hs_code") -> Optional[Dict[str, Any]]:
        """Origin-specific row first, then generic origins, then any origin."""
        base = f"SELECT {TARIFF_COLUMNS} FROM tariff_rates WHERE is_active = 1 AND ({condition})"
        generic = ", ".join("?" for _ in GENERIC_ORIGIN_CODES)
        attempts = []
        if origin:
            attempts.append((" AND origin_country_code = ?", [origin]))
        attempts.append((
            f" AND (origin_country_code IS NULL OR origin_country_code IN ({generic}))",
            list(GENERIC_ORIGIN_CODES),
        ))
        attempts.append(("", []))

        for extra, extra_params in attempts:
            row = self.database.fetch_one(
                f"{base}{extra} ORDER BY {order_by} LIMIT 1", *params, *extra_params
            )
            if row:
                return row
        return None

    def exact(self, hs_code: str, origin: Optional[str] = None) -> Optional[Dict[str, Any]]:
        code = normalize_hs_code(hs_code)
        if not code:
            return None
        row = self._lookup("hs_code = ?", [code], origin)
        if row is None and hs_code_digits(hs_code) != code:
            row = self._lookup("hs_code = ?", [hs_code_digits(hs_code)], origin)
        return row

    def prefix(self, prefix: str, origin: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if len(prefix) < 4:
            return None
        return self._lookup("hs_code LIKE ?", [f"{prefix}%"], origin)

    def from_history(self, product_name: str, material: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Most frequent learned code for a name (and material when given)."""
        if not product_name:
            return None
        if material:
            row = self.database.fetch_one(
                "SELECT matched_hs_code, match_count FROM hs_match_history "
                "WHERE product_name = ? AND material = ? ORDER BY match_count DESC LIMIT 1",
                product_name, material,
            )
        else:
            row = self.database.fetch_one(
                "SELECT matched_hs_code, match_count FROM hs_match_history "
                "WHERE product_name = ? AND material IS NULL ORDER BY match_count DESC LIMIT 1",
                product_name,
            )
        if row:
            return row
        return self.database.fetch_one(
            "SELECT matched_hs_code, match_count FROM hs_match_history "
            "WHERE product_name = ? ORDER BY match_count DESC LIMIT 1",
            product_name,
        )

    def fuzzy(self, product_name: str, origin: Optional[str] = None,
              material: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Case-insensitive substring search over the goods descriptions."""
        name = f"%{product_name.lower()}%"
        name_condition = (
            "LOWER(goods_description_cn) LIKE ? OR LOWER(goods_description) LIKE ?"
        )
        if material:
            mat = f"%{material.lower()}%"
            row = self._lookup(
                f"({name_condition}) AND (LOWER(material) LIKE ? "
                f"OR LOWER(goods_description) LIKE ? OR LOWER(goods_description_cn) LIKE ?)",
                [name, name, mat, mat, mat],
                origin,
            )
            if row:
                row["_material_matched"] = True
                return row
        return self._lookup(name_condition, [name, name], origin)

    def match(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Match one cargo item.

        Args:
            item: Dict with 'customer_hs_code', 'product_name', 'material',
                'origin_country' (default 'CN')

        Returns:
            Dict with 'hs_code', 'confidence', 'source' and 'tariff'
            (all empty with confidence 0 when nothing matched)
        """
        customer_code = hs_code_digits(item.get("customer_hs_code"))
        product_name = (item.get("product_name") or "").strip()
        material = (item.get("material") or "").strip() or None
        origin = item.get("origin_country") or "CN"

        if customer_code:
            row = self.exact(customer_code, origin)
            if row:
                return self._result(row, self.confidence["exact"], "exact")
            for length, key in ((8, "prefix8"), (6, "prefix6")):
                if len(customer_code) >= length:
                    row = self.prefix(customer_code[:length], origin)
                    if row:
                        return self._result(row, self.confidence[key], f"prefix_{length}")

        history = self.from_history(product_name, material)
        if history:
            code = normalize_hs_code(history["matched_hs_code"])
            confidence = min(
                self.confidence["history"],
                self.confidence["history_base"]
                + int(history["match_count"] or 0) * self.confidence["history_step"],
            )
            tariff = self.exact(code, origin)
            return {
                "hs_code": code,
                "confidence": confidence,
                "source": "history",
                "tariff": convert_tariff_row(tariff) if tariff else None,
            }

        if product_name:
            row = self.fuzzy(product_name, origin, material)
            if row:
                material_matched = row.pop("_material_matched", False)
                if material_matched:
                    return self._result(row, self.confidence["fuzzy_material"], "fuzzy_material")
                return self._result(row, self.confidence["fuzzy"], "fuzzy")

        return {"hs_code": None, "confidence": 0, "source": None, "tariff": None}

    def _result(self, row: Dict[str, Any], confidence: int, source: str) -> Dict[str, Any]:
        tariff = convert_tariff_row(row)
        return {"hs_code": tariff["hs_code"], "confidence": confidence,
                "source": source, "tariff": tariff}

    def learn(self, product_name: str, hs_code: str, material: Optional[str] = None) -> int:
        """Record a confirmed match so later lookups can use it.

        Returns:
            The new match_count for the name/material pair
        """
        code = normalize_hs_code(hs_code)
        if not product_name or not code:
            raise ValueError("product_name and hs_code are required")
        material = material or None

        with self.database.transaction() as tx:
            if material:
                existing = tx.fetch_one(
                    "SELECT id, match_count FROM hs_match_history "
                    "WHERE product_name = ? AND material = ?", product_name, material,
                )
            else:
                existing = tx.fetch_one(
                    "SELECT id, match_count FROM hs_match_history "
                    "WHERE product_name = ? AND material IS NULL", product_name,
                )
            if existing:
                tx.execute(
                    "UPDATE hs_match_history SET matched_hs_code = ?, "
                    "match_count = match_count + 1, last_matched_at = CURRENT_TIMESTAMP "
                    "WHERE id = ?",
                    code, existing["id"],
                )
                return int(existing["match_count"] or 0) + 1
            tx.execute(
                "INSERT INTO hs_match_history (product_name, material, matched_hs_code, match_count) "
                "VALUES (?, ?, ?, 1)",
                product_name, material, code,
            )
            return 1
