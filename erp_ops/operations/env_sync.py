"""Environment comparison, base-data sync and SQL export between databases."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from erp_ops.config import (
    EXPORT_BATCH_SIZE,
    EXPORT_TABLES,
    ORDER_TABLES,
    SYNC_TABLES,
    UPSERT_PRESERVED_COLUMNS,
)
from erp_ops.core.database import Database, quote_identifier
from erp_ops.core.database_inspector import DatabaseInspector, compare_structures

logger = logging.getLogger(__name__)


def _table_specs(names: Optional[Sequence[str]], registry: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """Select table specs by name, keeping registry order.

    Raises:
        ValueError: For unknown names and for order tables
    """
    blocked = [n for n in (names or []) if n in ORDER_TABLES]
    if blocked:
        raise ValueError(f"Order tables are never synced: {', '.join(blocked)}")
    if not names:
        return list(registry)
    known = {spec["name"] for spec in registry}
    unknown = [n for n in names if n not in known]
    if unknown:
        raise ValueError(f"Unknown table(s): {', '.join(unknown)}")
    return [spec for spec in registry if spec["name"] in names]


def build_upsert(table: str, columns: Sequence[str], conflict_key: str) -> str:
    """``INSERT ... ON CONFLICT`` with named binds ``:c0``, ``:c1``...

    Every column except the conflict key and preserved columns (created_at)
    is overwritten on conflict; with nothing to overwrite the row is left alone.
    """
    quoted = [quote_identifier(c) for c in columns]
    binds = [f":c{i}" for i in range(len(columns))]
    update_cols = [
        c for c in columns if c != conflict_key and c not in UPSERT_PRESERVED_COLUMNS
    ]
    sql = (
        f"INSERT INTO {quote_identifier(table)} ({', '.join(quoted)}) "
        f"VALUES ({', '.join(binds)}) ON CONFLICT ({quote_identifier(conflict_key)}) "
    )
    if not update_cols:
        return sql + "DO NOTHING"
    assignments = ", ".join(
        f"{quote_identifier(c)} = EXCLUDED.{quote_identifier(c)}" for c in update_cols
    )
    return sql + f"DO UPDATE SET {assignments}"


def bind_value(value: Any) -> Any:
    """Bind JSON column values (read back as dict or list) as JSON text."""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


# ---------------------------------------------------------------------------
# Structure comparison
# ---------------------------------------------------------------------------

class EnvironmentComparer:
    """Compares table structures of several environments with a reference."""

    def __init__(self, databases: Dict[str, Database], exclude: Iterable[str] = ORDER_TABLES):
        """Initialize comparer.

        Args:
            databases: Environment name to database; the first entry is the reference
            exclude: Tables left out of the comparison
        """
        if len(databases) < 2:
            raise ValueError("At least two environments are needed for a comparison")
        self.databases = databases
        self.exclude = frozenset(exclude)

    def compare(self) -> Dict[str, Any]:
        """Compare every environment with the reference.

        Returns:
            Dict with 'reference' and 'environments', mapping each other
            environment to 'missing_tables', 'extra_tables' and 'tables'
            (per common table: column/index differences, only when non-empty)
        """
        names = list(self.databases)
        reference = names[0]
        ref_inspector = DatabaseInspector(self.databases[reference])
        ref_tables = [t for t in ref_inspector.list_tables() if t not in self.exclude]
        ref_structures = {t: ref_inspector.get_table_structure(t) for t in ref_tables}

        environments = {}
        for name in names[1:]:
            inspector = DatabaseInspector(self.databases[name])
            tables = [t for t in inspector.list_tables() if t not in self.exclude]
            differences = {}
            for table in sorted(set(ref_tables) & set(tables)):
                diff = compare_structures(ref_structures[table], inspector.get_table_structure(table))
                if any(diff.values()):
                    differences[table] = diff
            environments[name] = {
                "missing_tables": sorted(set(ref_tables) - set(tables)),
                "extra_tables": sorted(set(tables) - set(ref_tables)),
                "tables": differences,
            }
            logger.info(
                "%s vs %s: %d missing tables, %d tables differ",
                name, reference, len(environments[name]["missing_tables"]), len(differences),
            )

        return {"reference": reference, "environments": environments}


# ---------------------------------------------------------------------------
# Base-data sync
# ---------------------------------------------------------------------------

class BaseDataSync:
    """Copies reference tables from a source to a target environment."""

    def __init__(self, source: Database, target: Database):
        self.source = source
        self.target = target
        self.source_inspector = DatabaseInspector(source)
        self.target_inspector = DatabaseInspector(target)
        self._progress_callback: Optional[Callable[[str, Dict[str, Any]], None]] = None

    def set_progress_callback(self, callback: Callable[[str, Dict[str, Any]], None]) -> None:
        """Set callback(table_name, table_result) called after each table."""
        self._progress_callback = callback

    def sync(self, tables: Optional[Sequence[str]] = None, dry_run: bool = True,
             registry: Optional[List[Dict[str, str]]] = None) -> Dict[str, Any]:
        """Sync reference tables.

        Args:
            tables: Table names (every registered table when omitted)
            dry_run: Only count what would change
            registry: Table specs to choose from (default SYNC_TABLES)

        Returns:
            Dict with 'tables' (per-table results), 'inserted', 'updated',
            'failed' totals and 'dry_run'
        """
        specs = _table_specs(tables, SYNC_TABLES if registry is None else registry)
        results = {}
        for spec in specs:
            result = self.sync_table(spec, dry_run=dry_run)
            results[spec["name"]] = result
            if self._progress_callback:
                self._progress_callback(spec["name"], result)

        return {
            "tables": results,
            "inserted": sum(r["inserted"] for r in results.values()),
            "updated": sum(r["updated"] for r in results.values()),
            "failed": [name for name, r in results.items() if r["status"] == "failed"],
            "dry_run": dry_run,
        }

    def sync_table(self, spec: Dict[str, str], dry_run: bool = True) -> Dict[str, Any]:
        """Sync one table inside its own transaction.

        Rows are inserted when the conflict key is new to the target and
        updated when any shared column differs. A failure rolls back the
        whole table and is reported in the result.
        """
        table, key = spec["name"], spec["conflict_key"]
        result: Dict[str, Any] = {
            "status": "ok", "source_rows": 0, "target_rows": 0,
            "inserted": 0, "updated": 0, "unchanged": 0, "error": None,
        }

        if table in ORDER_TABLES:
            raise ValueError(f"Order tables are never synced: {table}")
        if not self.source_inspector.has_table(table):
            result["status"] = "missing_in_source"
            return result
        if not self.target_inspector.has_table(table):
            result["status"] = "missing_in_target"
            return result

        target_columns = self.target_inspector.get_columns(table)
        columns = [c for c in self.source_inspector.get_columns(table) if c in target_columns]
        if key not in columns:
            result["status"] = "failed"
            result["error"] = f"Conflict key {key} not shared by both tables"
            return result

        column_list = ", ".join(quote_identifier(c) for c in columns)
        source_rows = self.source.fetch_all(f"SELECT {column_list} FROM {quote_identifier(table)}")
        target_rows = {
            row[key]: row
            for row in self.target.fetch_all(f"SELECT {column_list} FROM {quote_identifier(table)}")
        }
        result["source_rows"] = len(source_rows)
        result["target_rows"] = len(target_rows)

        changed = []
        for row in source_rows:
            existing = target_rows.get(row[key])
            if existing is None:
                result["inserted"] += 1
                changed.append(row)
            elif any(row[c] != existing[c] for c in columns if c not in UPSERT_PRESERVED_COLUMNS):
                result["updated"] += 1
                changed.append(row)
            else:
                result["unchanged"] += 1

        if dry_run or not changed:
            return result

        sql = build_upsert(table, columns, key)
        try:
            with self.target.transaction() as tx:
                for row in changed:
                    tx.execute(sql, {f"c{i}": bind_value(row[c]) for i, c in enumerate(columns)})
        except SQLAlchemyError as e:
            logger.error("Sync of %s failed, rolled back: %s", table, e)
            result.update(status="failed", inserted=0, updated=0, error=str(e))
            return result

        logger.info("Synced %s: %d inserted, %d updated", table, result["inserted"], result["updated"])
        return result


# ---------------------------------------------------------------------------
# SQL export / load
# ---------------------------------------------------------------------------

def sql_literal(value: Any) -> str:
    """Render a Python value as a PostgreSQL literal."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return f"'{value.isoformat()}'"
    if isinstance(value, (dict, list)):
        value = json.dumps(value, ensure_ascii=False)
    return "'" + str(value).replace("'", "''") + "'"


def split_sql_statements(content: str) -> List[str]:
    """Split a dump into statements on ``;``, dropping ``--`` comments.

    Semicolons, comment markers and line breaks inside quoted literals or
    identifiers belong to the statement; a doubled quote escapes itself.
    """
    statements: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    i, length = 0, len(content)
    while i < length:
        ch = content[i]
        if quote:
            current.append(ch)
            if ch == quote:
                if content.startswith(quote, i + 1):
                    current.append(quote)
                    i += 1
                else:
                    quote = None
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif content.startswith("--", i):
            end = content.find("\n", i)
            i = length if end == -1 else end
            continue
        elif ch == ";":
            statements.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    statements.append("".join(current))
    return [s.strip() for s in statements if s.strip()]


class BaseDataExporter:
    """Writes reference tables as re-runnable INSERT statements."""

    def __init__(self, database: Database, batch_size: int = EXPORT_BATCH_SIZE):
        self.database = database
        self.batch_size = batch_size
        self.inspector = DatabaseInspector(database)

    def export_table(self, spec: Dict[str, str], out_dir: Path) -> Dict[str, Any]:
        """Export one table to ``<out_dir>/<table>.sql``.

        Returns:
            Dict with 'table', 'path' and 'rows' (path None when the table is missing)
        """
        table, key = spec["name"], spec["conflict_key"]
        if table in ORDER_TABLES:
            raise ValueError(f"Order tables are never exported: {table}")
        if not self.inspector.has_table(table):
            logger.warning("Table %s not found, skipping export", table)
            return {"table": table, "path": None, "rows": 0}

        columns = list(self.inspector.get_columns(table))
        column_list = ", ".join(quote_identifier(c) for c in columns)
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / f"{table}.sql"

        rows_written = 0
        with open(path, "w", encoding="utf-8") as f:
            f.write(f"-- {table} exported {datetime.now().isoformat()}\n")
            offset = 0
            while True:
                rows = self.database.fetch_all(
                    f"SELECT {column_list} FROM {quote_identifier(table)} "
                    f"ORDER BY {quote_identifier(key)} LIMIT ? OFFSET ?",
                    self.batch_size, offset,
                )
                for row in rows:
                    values = ", ".join(sql_literal(row[c]) for c in columns)
                    f.write(
                        f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES ({values}) "
                        f"ON CONFLICT ({quote_identifier(key)}) DO NOTHING;\n"
                    )
                rows_written += len(rows)
                if len(rows) < self.batch_size:
                    break
                offset += self.batch_size

        logger.info("Exported %d rows of %s to %s", rows_written, table, path)
        return {"table": table, "path": path, "rows": rows_written}

    def export(self, tables: Optional[Sequence[str]], out_dir: Path) -> List[Dict[str, Any]]:
        return [self.export_table(spec, out_dir) for spec in _table_specs(tables, EXPORT_TABLES)]


def execute_sql_file(database: Database, path: Path, dry_run: bool = True) -> Dict[str, Any]:
    """Replay an exported SQL file statement by statement.

    Duplicate-key failures are counted as skipped; any other error stops
    the run and is re-raised.

    Returns:
        Dict with 'statements', 'executed', 'skipped' and 'dry_run'
    """
    with open(path, "r", encoding="utf-8") as f:
        statements = split_sql_statements(f.read())

    result = {"statements": len(statements), "executed": 0, "skipped": 0, "dry_run": dry_run}
    if dry_run:
        return result

    for statement in statements:
        try:
            database.execute_raw(statement)
            result["executed"] += 1
        except IntegrityError as e:
            logger.debug("Duplicate skipped: %s", e.orig)
            result["skipped"] += 1
    logger.info("%s: %d executed, %d skipped", path.name, result["executed"], result["skipped"])
    return result
