"""Excel-to-database field diffing.

The operator supplies a YAML mapping that names the target table, the key
column and which spreadsheet header feeds which database column::

    table: bills_of_lading
    key_column: bill_number
    key_header: Bill No
    fields:
      ETA: eta
      Container: container_number
      Weight (kg): weight
    date_fields: [eta]
    number_fields: [weight]

Every sheet row is matched to its database row by key. A field is reported
(and later updated) only when the sheet has a value and that value differs
from the stored one; empty cells never blank out data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from config import ConfigurationError
from erp_ops.core.database import Database
from erp_ops.core.normalization import (
    format_excel_date,
    format_number,
    format_text,
    values_equal,
)
from erp_ops.core.spreadsheet import read_table

logger = logging.getLogger(__name__)

IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
KEY_BATCH_SIZE = 500


@dataclass
class FieldMapping:
    table: str
    key_column: str
    key_header: str
    fields: Dict[str, str]
    date_fields: List[str] = field(default_factory=list)
    number_fields: List[str] = field(default_factory=list)
    touch_column: Optional[str] = "updated_at"
    sheet: Optional[str] = None

    def validate(self) -> None:
        """Reject identifiers that could not be used safely in SQL.

        Raises:
            ConfigurationError: On a missing or malformed identifier
        """
        names = [self.table, self.key_column, *self.fields.values()]
        if self.touch_column:
            names.append(self.touch_column)
        for name in names:
            if not name or not IDENTIFIER.match(str(name)):
                raise ConfigurationError(f"Invalid identifier in mapping: {name!r}")
        if not self.fields:
            raise ConfigurationError("Mapping defines no fields")
        if not self.key_header:
            raise ConfigurationError("Mapping defines no key_header")

    def convert(self, column: str, value: Any) -> Any:
        """Normalize a sheet cell according to the column's declared kind."""
        if column in self.date_fields:
            return format_excel_date(value)
        if column in self.number_fields:
            return format_number(value)
        return format_text(value)


def load_mapping(path: Path) -> FieldMapping:
    """Load and validate a YAML mapping file.

    Raises:
        ConfigurationError: If the file is missing keys or malformed
    """
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Mapping file {path} must contain a mapping")

    try:
        mapping = FieldMapping(
            table=raw["table"],
            key_column=raw["key_column"],
            key_header=str(raw["key_header"]),
            fields={str(k): str(v) for k, v in (raw.get("fields") or {}).items()},
            date_fields=list(raw.get("date_fields") or []),
            number_fields=list(raw.get("number_fields") or []),
            touch_column=raw.get("touch_column", "updated_at"),
            sheet=raw.get("sheet"),
        )
    except KeyError as e:
        raise ConfigurationError(f"Mapping file {path} is missing {e}")
    mapping.validate()
    return mapping


class ExcelFieldSync:
    """Compares a spreadsheet with database rows and applies the differences."""

    def __init__(self, database: Database, mapping: FieldMapping):
        self.database = database
        self.mapping = mapping
        mapping.validate()

    def _load_rows(self, keys: List[str]) -> Dict[str, Dict[str, Any]]:
        m = self.mapping
        columns = ", ".join([m.key_column, *dict.fromkeys(m.fields.values())])
        result: Dict[str, Dict[str, Any]] = {}
        for start in range(0, len(keys), KEY_BATCH_SIZE):
            batch = keys[start:start + KEY_BATCH_SIZE]
            placeholders = ", ".join("?" for _ in batch)
            rows = self.database.fetch_all(
                f"SELECT {columns} FROM {m.table} WHERE {m.key_column} IN ({placeholders})",
                *batch,
            )
            for row in rows:
                result[str(row[m.key_column])] = row
        return result

    def diff(self, file_path: Path) -> Dict[str, Any]:
        """Compute per-record field changes.

        Returns:
            Dict with 'records' (list of {'key', 'changes'}), 'missing_keys',
            'missing_headers', 'total_rows', 'field_updates' and 'unchanged'

        Raises:
            ValueError: If the key header is not in the sheet
        """
        m = self.mapping
        headers, rows = read_table(file_path, m.sheet)
        if m.key_header not in headers:
            raise ValueError(f"Key column '{m.key_header}' not found in sheet")

        missing_headers = [h for h in m.fields if h not in headers]
        for header in missing_headers:
            logger.warning("Mapped header '%s' not present in sheet", header)
        active_fields = {h: c for h, c in m.fields.items() if h in headers}

        keyed_rows = []
        for row in rows:
            key = format_text(row.get(m.key_header))
            if key:
                keyed_rows.append((key, row))

        db_rows = self._load_rows(list(dict.fromkeys(k for k, _ in keyed_rows)))

        records = []
        missing_keys = []
        unchanged = 0
        for key, row in keyed_rows:
            current = db_rows.get(key)
            if current is None:
                missing_keys.append(key)
                continue

            changes = []
            for header, column in active_fields.items():
                new_value = m.convert(column, row.get(header))
                if new_value is None:
                    continue
                if values_equal(new_value, current.get(column)):
                    continue
                changes.append({
                    "column": column,
                    "header": header,
                    "old": current.get(column),
                    "new": new_value,
                })
            if changes:
                records.append({"key": key, "changes": changes})
            else:
                unchanged += 1

        return {
            "records": records,
            "missing_keys": missing_keys,
            "missing_headers": missing_headers,
            "total_rows": len(keyed_rows),
            "field_updates": sum(len(r["changes"]) for r in records),
            "unchanged": unchanged,
        }

    def apply(self, diff: Dict[str, Any]) -> int:
        """Write the changes of :meth:`diff` in one transaction.

        Returns:
            Number of records updated
        """
        m = self.mapping
        updated = 0
        with self.database.transaction() as tx:
            for record in diff["records"]:
                assignments = []
                params: Dict[str, Any] = {"key": record["key"]}
                for i, change in enumerate(record["changes"]):
                    assignments.append(f"{change['column']} = :v{i}")
                    params[f"v{i}"] = change["new"]
                if m.touch_column:
                    assignments.append(f"{m.touch_column} = CURRENT_TIMESTAMP")
                updated += tx.execute(
                    f"UPDATE {m.table} SET {', '.join(assignments)} WHERE {m.key_column} = :key",
                    params,
                )
        logger.info("Updated %d record(s) in %s", updated, m.table)
        return updated
