"""TARIC validation against the trade tariff API and nomenclature import."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from requests.exceptions import RequestException

from erp_ops.core.database import Database
from erp_ops.core.normalization import (
    format_text,
    hs_code_digits,
    hs_code_level,
    normalize_hs_code,
    split_hs_code,
)
from erp_ops.core.spreadsheet import read_table

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://www.trade-tariff.service.gov.uk/xi/api/v2"
USER_AGENT = "erp-ops-taric-validator/1.0"
MAX_CHILD_CODES = 5

COLUMN_KEYWORDS = {
    "code": ["cn8", "cn code", "code", "taric", "hs"],
    "description": ["description", "desc", "text", "name"],
    "subheading": ["subheading"],
    "heading": ["heading"],
    "chapter": ["chapter"],
}


class TaricLookupError(Exception):
    """Exception raised for trade tariff API failures."""

    pass


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

class TaricClient:
    def __init__(
        self,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": USER_AGENT})

    def _get(self, path: str) -> Optional[Dict[str, Any]]:
        """GET a JSON document; None for 404.

        Raises:
            TaricLookupError: On timeouts, connection failures and other HTTP errors.
        """
        url = f"{self.base_url}/{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

        except requests.exceptions.Timeout:
            logger.error("Timeout while requesting %s", url)
            raise TaricLookupError("Request timeout")

        except requests.exceptions.ConnectionError as e:
            logger.error("Connection error for %s: %s", url, e)
            raise TaricLookupError(f"Could not connect to tariff API: {e}")

        except requests.exceptions.HTTPError as e:
            logger.error("HTTP error for %s: %s", url, e)
            raise TaricLookupError(f"HTTP {e.response.status_code if e.response is not None else '?'}")

        except ValueError:
            raise TaricLookupError("Invalid JSON response")

        except RequestException as e:
            logger.error("Request error for %s: %s", url, e)
            raise TaricLookupError(f"Request to tariff API failed: {e}")

    def commodity(self, code: str) -> Optional[Dict[str, Any]]:
        return self._get(f"commodities/{code}")

    def heading(self, code: str) -> Optional[Dict[str, Any]]:
        return self._get(f"headings/{code[:4]}")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _child(item: Dict[str, Any]) -> Dict[str, Any]:
    attrs = item.get("attributes") or {}
    return {"code": attrs.get("goods_nomenclature_item_id"), "description": attrs.get("description")}


class TaricValidator:
    """Checks stored HS codes against the TARIC nomenclature."""

    def __init__(
        self,
        client: TaricClient,
        database: Optional[Database] = None,
        delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.database = database
        self.delay = delay
        self._sleep = sleep
        self._progress_callback: Optional[Callable[[int, int], None]] = None

    def set_progress_callback(self, callback: Callable[[int, int], None]) -> None:
        """Set callback(current, total) for progress updates."""
        self._progress_callback = callback

    def validate_code(self, code: str) -> Dict[str, Any]:
        """Validate one code.

        The commodity endpoint is tried with the code padded to ten digits.
        When it is unknown, the four-digit heading is fetched and its
        commodities are searched for the code itself or for children sharing
        its first eight digits.

        Returns:
            Dict with 'code', 'normalized_code', 'status' (declarable, parent,
            invalid or error), 'is_valid', 'is_declarable', 'is_parent',
            'level', 'description', 'child_codes' and 'error'
        """
        digits = hs_code_digits(code)
        result: Dict[str, Any] = {
            "code": code,
            "normalized_code": digits,
            "status": "invalid",
            "is_valid": False,
            "is_declarable": False,
            "is_parent": False,
            "level": None,
            "description": None,
            "child_codes": [],
            "error": None,
        }

        if len(digits) < 4:
            result["error"] = "Code too short"
            return result

        target = normalize_hs_code(digits)
        result["level"] = hs_code_level(digits)

        try:
            data = self.client.commodity(target)
            if data and data.get("data"):
                attrs = data["data"].get("attributes") or {}
                result["is_valid"] = True
                result["description"] = (
                    attrs.get("description")
                    or attrs.get("formatted_description")
                    or attrs.get("goods_nomenclature_item_id")
                )
                if "declarable" in attrs:
                    result["is_declarable"] = bool(attrs["declarable"])
                    result["is_parent"] = not result["is_declarable"]
            else:
                self._search_heading(digits, target, result)
        except TaricLookupError as e:
            result["error"] = str(e)
            result["status"] = "error"
            return result

        if result["is_valid"]:
            result["status"] = "declarable" if result["is_declarable"] else "parent"
        return result

    def _search_heading(self, digits: str, target: str, result: Dict[str, Any]) -> None:
        data = self.client.heading(digits)
        if not data or not data.get("included"):
            result["error"] = "Code not found in TARIC"
            return

        commodities = [i for i in data["included"] if i.get("type") == "commodity"]

        def item_id(item):
            return (item.get("attributes") or {}).get("goods_nomenclature_item_id") or ""

        def declarable(item):
            return (item.get("attributes") or {}).get("declarable") is True

        exact = next((c for c in commodities if item_id(c) == target), None)
        if exact is not None:
            result["is_valid"] = True
            result["description"] = (exact.get("attributes") or {}).get("description")
            result["is_declarable"] = declarable(exact)
            if not result["is_declarable"]:
                result["is_parent"] = True
                children = [
                    c for c in commodities
                    if item_id(c).startswith(digits) and item_id(c) != target and declarable(c)
                ]
                result["child_codes"] = [_child(c) for c in children[:MAX_CHILD_CODES]]
            return

        prefix_matches = [c for c in commodities if item_id(c).startswith(digits[:8])]
        if prefix_matches:
            result["is_valid"] = True
            result["is_parent"] = True
            result["description"] = "Parent code with declarable children"
            result["child_codes"] = [
                _child(c) for c in prefix_matches if declarable(c)
            ][:MAX_CHILD_CODES]
            return

        result["error"] = "Code not found in TARIC"

    def load_codes(
        self,
        limit: Optional[int] = None,
        country: Optional[str] = None,
        chapter: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Distinct codes of active tariff rows, ten-digit column preferred."""
        if self.database is None:
            raise ValueError("A database is required to load codes")

        sql = (
            "SELECT DISTINCT COALESCE(NULLIF(hs_code_10, ''), hs_code) AS code, "
            "hs_code, hs_code_10, SUBSTR(goods_description, 1, 50) AS description, "
            "origin_country_code FROM tariff_rates WHERE is_active = 1"
        )
        params: List[Any] = []
        if country:
            sql += " AND origin_country_code = ?"
            params.append(country)
        if chapter:
            sql += " AND hs_code LIKE ?"
            params.append(f"{chapter}%")
        sql += " ORDER BY code"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        return self.database.fetch_all(sql, *params)

    def run(
        self,
        limit: Optional[int] = None,
        country: Optional[str] = None,
        chapter: Optional[str] = None,
        rows: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Validate every selected code sequentially.

        Args:
            limit: Maximum number of codes
            country: Origin country code filter
            chapter: Two-digit chapter filter
            rows: Pre-loaded rows (skips the database query)

        Returns:
            Report dict with 'generated_at', 'options', 'summary' and the
            'parent_codes', 'invalid_codes' and 'error_codes' lists
        """
        if rows is None:
            rows = self.load_codes(limit=limit, country=country, chapter=chapter)

        summary = {"total": len(rows), "valid": 0, "declarable": 0,
                   "parent_codes": 0, "invalid": 0, "errors": 0}
        parents, invalid, errors = [], [], []

        for i, row in enumerate(rows, start=1):
            validation = self.validate_code(row["code"])
            entry = {
                "code": row["code"],
                "hs_code": row.get("hs_code"),
                "hs_code_10": row.get("hs_code_10"),
                "description": row.get("description"),
                "country": row.get("origin_country_code"),
            }
            if validation["status"] == "error":
                summary["errors"] += 1
                errors.append({**entry, "error": validation["error"]})
            elif validation["is_valid"]:
                summary["valid"] += 1
                if validation["is_declarable"]:
                    summary["declarable"] += 1
                else:
                    summary["parent_codes"] += 1
                    parents.append({**entry, "child_codes": validation["child_codes"]})
            else:
                summary["invalid"] += 1
                invalid.append({**entry, "error": validation["error"]})

            if self._progress_callback:
                self._progress_callback(i, len(rows))
            if self.delay and i < len(rows):
                self._sleep(self.delay)

        total = summary["total"] or 1
        summary["valid_rate"] = round(summary["valid"] / total * 100, 1)
        summary["invalid_rate"] = round(summary["invalid"] / total * 100, 1)

        return {
            "generated_at": datetime.now().isoformat(),
            "options": {"limit": limit, "country": country, "chapter": chapter},
            "summary": summary,
            "parent_codes": parents,
            "invalid_codes": invalid,
            "error_codes": errors,
        }

    @staticmethod
    def save_report(report: Dict[str, Any], path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(report, f, ensure_ascii=False, indent=2)
        return path


# ---------------------------------------------------------------------------
# Nomenclature import
# ---------------------------------------------------------------------------

def detect_columns(headers: Sequence[str]) -> Dict[str, Optional[str]]:
    """Map code/description/chapter/heading/subheading onto spreadsheet headers.

    Keywords are tried in priority order; a header is used at most once,
    so "Subheading" is never taken as the heading column.
    """
    mapping: Dict[str, Optional[str]] = {}
    used = set()
    for role in ("subheading", "heading", "chapter", "code", "description"):
        found = None
        for keyword in COLUMN_KEYWORDS[role]:
            for header in headers:
                if header in used:
                    continue
                if keyword in str(header).lower():
                    found = header
                    break
            if found:
                break
        mapping[role] = found
        if found:
            used.add(found)
    return mapping


class TaricImporter:
    """Loads a TARIC nomenclature spreadsheet into hs_codes."""

    MIN_CODE_DIGITS = 6

    def __init__(self, database: Optional[Database] = None):
        self.database = database

    def parse_file(self, file_path: Path) -> Dict[str, Any]:
        """Read and normalize a nomenclature file.

        Returns:
            Dict with 'columns' (detected mapping), 'records' and 'skipped'

        Raises:
            ValueError: If no code column can be detected
        """
        headers, rows = read_table(file_path)
        columns = detect_columns(headers)
        if not columns["code"]:
            raise ValueError(f"No code column found in headers: {', '.join(headers)}")

        records = {}
        skipped = 0
        for row in rows:
            digits = hs_code_digits(row.get(columns["code"]))
            if len(digits) < self.MIN_CODE_DIGITS:
                skipped += 1
                continue
            parts = split_hs_code(digits)
            description = (
                format_text(row.get(columns["description"])) if columns["description"] else None
            )
            records[parts["hs_code"]] = {
                "hs_code": parts["hs_code"],
                "description": description,
                "chapter": parts["chapter"],
                "heading": parts["heading"],
                "subheading": parts["subheading"],
                "level": hs_code_level(digits),
            }
        return {"columns": columns, "records": list(records.values()), "skipped": skipped}

    def import_file(self, file_path: Path, dry_run: bool = True) -> Dict[str, Any]:
        """Upsert the parsed records into hs_codes in one transaction."""
        parsed = self.parse_file(file_path)
        parsed["imported"] = 0
        parsed["dry_run"] = dry_run
        if dry_run or not parsed["records"]:
            return parsed
        if self.database is None:
            raise ValueError("A database is required to import")

        sql = (
            "INSERT INTO hs_codes (hs_code, description, chapter, heading, subheading, level, updated_at) "
            "VALUES (:hs_code, :description, :chapter, :heading, :subheading, :level, CURRENT_TIMESTAMP) "
            "ON CONFLICT (hs_code) DO UPDATE SET description = EXCLUDED.description, "
            "chapter = EXCLUDED.chapter, heading = EXCLUDED.heading, "
            "subheading = EXCLUDED.subheading, level = EXCLUDED.level, "
            "updated_at = CURRENT_TIMESTAMP"
        )
        with self.database.transaction() as tx:
            for record in parsed["records"]:
                tx.execute(sql, record)
                parsed["imported"] += 1
        logger.info("Imported %d HS codes from %s", parsed["imported"], file_path.name)
        return parsed
