"""Idempotent schema migrations.

A migration is an ordered list of steps. Before anything runs, the live
schema is inspected and every step is classified as pending, applied or
blocked; only pending steps execute, inside one transaction. On PostgreSQL
every DDL statement additionally carries ``IF NOT EXISTS``, so re-running a
migration is always a no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from erp_ops.core.database import Database
from erp_ops.core.database_inspector import DatabaseInspector

logger = logging.getLogger(__name__)

PENDING = "pending"
APPLIED = "applied"
BLOCKED = "blocked"


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

@dataclass
class CreateTable:
    table: str
    columns: List[Tuple[str, str]]

    def describe(self) -> str:
        return f"create table {self.table}"

    def sql(self, dialect: str = "postgresql") -> str:
        body = ",\n    ".join(f"{name} {definition}" for name, definition in self.columns)
        return f"CREATE TABLE IF NOT EXISTS {self.table} (\n    {body}\n)"

    def status(self, inspector: DatabaseInspector, created: Set[str]) -> str:
        return APPLIED if inspector.has_table(self.table) else PENDING


@dataclass
class AddColumn:
    table: str
    column: str
    definition: str

    def describe(self) -> str:
        return f"add column {self.table}.{self.column}"

    def sql(self, dialect: str = "postgresql") -> str:
        if_not_exists = "IF NOT EXISTS " if dialect == "postgresql" else ""
        return f"ALTER TABLE {self.table} ADD COLUMN {if_not_exists}{self.column} {self.definition}"

    def status(self, inspector: DatabaseInspector, created: Set[str]) -> str:
        if self.table in created:
            return PENDING
        if not inspector.has_table(self.table):
            return BLOCKED
        return APPLIED if inspector.has_column(self.table, self.column) else PENDING


@dataclass
class CreateIndex:
    name: str
    table: str
    columns: str
    unique: bool = False

    def describe(self) -> str:
        return f"create index {self.name}"

    def sql(self, dialect: str = "postgresql") -> str:
        unique = "UNIQUE " if self.unique else ""
        return f"CREATE {unique}INDEX IF NOT EXISTS {self.name} ON {self.table} ({self.columns})"

    def status(self, inspector: DatabaseInspector, created: Set[str]) -> str:
        if self.table in created:
            return PENDING
        if not inspector.has_table(self.table):
            return BLOCKED
        return APPLIED if self.name in inspector.get_indexes(self.table) else PENDING


@dataclass
class SeedRows:
    """Insert default rows when the table is empty."""

    table: str
    conflict_key: str
    rows: List[Dict[str, Any]]

    def describe(self) -> str:
        return f"seed {len(self.rows)} row(s) into {self.table}"

    def statements(self) -> List[Tuple[str, Dict[str, Any]]]:
        result = []
        for row in self.rows:
            columns = list(row)
            sql = (
                f"INSERT INTO {self.table} ({', '.join(columns)}) "
                f"VALUES ({', '.join(':' + c for c in columns)}) "
                f"ON CONFLICT ({self.conflict_key}) DO NOTHING"
            )
            result.append((sql, row))
        return result

    def sql(self, dialect: str = "postgresql") -> str:
        return ";\n".join(sql for sql, _ in self.statements())

    def status(self, inspector: DatabaseInspector, created: Set[str]) -> str:
        if self.table in created:
            return PENDING
        if not inspector.has_table(self.table):
            return BLOCKED
        return PENDING if inspector.count_rows(self.table) == 0 else APPLIED


@dataclass
class Migration:
    name: str
    description: str
    steps: List[Any] = field(default_factory=list)

    @property
    def created_tables(self) -> List[str]:
        return [s.table for s in self.steps if isinstance(s, CreateTable)]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

MIGRATIONS: List[Migration] = [
    Migration(
        name="order_sequences",
        description="Order number counters and bills_of_lading.order_seq",
        steps=[
            CreateTable("order_sequences", [
                ("business_type", "TEXT PRIMARY KEY"),
                ("current_seq", "INTEGER NOT NULL DEFAULT 0"),
                ("updated_at", "TIMESTAMP DEFAULT CURRENT_TIMESTAMP"),
            ]),
            AddColumn("bills_of_lading", "order_seq", "INTEGER"),
            CreateIndex("idx_bills_of_lading_order_seq", "bills_of_lading", "order_seq"),
            SeedRows("order_sequences", "business_type", [
                {"business_type": "BILL", "current_seq": 0},
                {"business_type": "inquiry", "current_seq": 0},
            ]),
        ],
    ),
    Migration(
        name="fees_supplier_columns",
        description="Payable/receivable split and supplier reference on fees",
        steps=[
            AddColumn("fees", "fee_type", "TEXT DEFAULT 'receivable'"),
            AddColumn("fees", "supplier_id", "TEXT"),
            AddColumn("fees", "supplier_name", "TEXT"),
            AddColumn("fees", "description", "TEXT"),
            CreateIndex("idx_fees_type", "fees", "fee_type"),
            CreateIndex("idx_fees_supplier", "fees", "supplier_id"),
        ],
    ),
    Migration(
        name="tariff_rates_taric_columns",
        description="TARIC columns on tariff_rates",
        steps=[
            AddColumn("tariff_rates", "hs_code_10", "TEXT"),
            AddColumn("tariff_rates", "taric_code", "TEXT"),
            AddColumn("tariff_rates", "third_country_duty", "NUMERIC"),
            AddColumn("tariff_rates", "geographical_area", "TEXT"),
            AddColumn("tariff_rates", "api_source", "TEXT DEFAULT 'manual'"),
            AddColumn("tariff_rates", "last_api_sync", "TIMESTAMP"),
            CreateIndex("idx_tariff_rates_taric_code", "tariff_rates", "taric_code"),
            CreateIndex("idx_tariff_rates_hs_code", "tariff_rates", "hs_code"),
        ],
    ),
    Migration(
        name="hs_match_history",
        description="Learned product-name to HS code matches",
        steps=[
            CreateTable("hs_match_history", [
                ("id", "SERIAL PRIMARY KEY"),
                ("product_name", "TEXT NOT NULL"),
                ("material", "TEXT"),
                ("matched_hs_code", "TEXT NOT NULL"),
                ("match_count", "INTEGER DEFAULT 1"),
                ("last_matched_at", "TIMESTAMP DEFAULT CURRENT_TIMESTAMP"),
                ("created_at", "TIMESTAMP DEFAULT CURRENT_TIMESTAMP"),
            ]),
            CreateIndex("idx_hs_match_history_product", "hs_match_history", "product_name"),
        ],
    ),
    Migration(
        name="hs_codes",
        description="TARIC nomenclature imported from Excel",
        steps=[
            CreateTable("hs_codes", [
                ("hs_code", "TEXT PRIMARY KEY"),
                ("description", "TEXT"),
                ("chapter", "TEXT"),
                ("heading", "TEXT"),
                ("subheading", "TEXT"),
                ("level", "TEXT"),
                ("updated_at", "TIMESTAMP DEFAULT CURRENT_TIMESTAMP"),
            ]),
            CreateIndex("idx_hs_codes_chapter", "hs_codes", "chapter"),
        ],
    ),
    Migration(
        name="backup_records",
        description="Run log for database backups",
        steps=[
            CreateTable("backup_records", [
                ("id", "SERIAL PRIMARY KEY"),
                ("backup_type", "TEXT NOT NULL"),
                ("file_name", "TEXT"),
                ("file_path", "TEXT"),
                ("file_size", "BIGINT"),
                ("status", "TEXT DEFAULT 'running'"),
                ("error_message", "TEXT"),
                ("started_at", "TIMESTAMP DEFAULT CURRENT_TIMESTAMP"),
                ("completed_at", "TIMESTAMP"),
            ]),
            CreateIndex("idx_backup_records_status", "backup_records", "status"),
        ],
    ),
]


def get_migrations(names: Optional[Sequence[str]] = None,
                   registry: Optional[List[Migration]] = None) -> List[Migration]:
    """Select migrations by name, keeping registry order.

    Raises:
        ValueError: If a name is not registered
    """
    registry = MIGRATIONS if registry is None else registry
    if not names:
        return list(registry)
    known = {m.name for m in registry}
    unknown = [n for n in names if n not in known]
    if unknown:
        raise ValueError(f"Unknown migration(s): {', '.join(unknown)}")
    return [m for m in registry if m.name in names]


def expected_tables(migrations: Sequence[Migration]) -> List[str]:
    """Tables the migrations create, in order."""
    tables = []
    for migration in migrations:
        for table in migration.created_tables:
            if table not in tables:
                tables.append(table)
    return tables


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class MigrationRunner:
    """Plans and applies migrations against one database."""

    def __init__(self, database: Database, inspector: Optional[DatabaseInspector] = None):
        self.database = database
        self.inspector = inspector or DatabaseInspector(database)
        self._progress_callback: Optional[Callable[[str, str], None]] = None

    def set_progress_callback(self, callback: Callable[[str, str], None]) -> None:
        """Set callback(migration_name, step_description) called before each step."""
        self._progress_callback = callback

    def plan(self, migrations: Sequence[Migration]) -> List[Dict[str, Any]]:
        """Classify every step of *migrations* against the live schema.

        Returns:
            List of dicts with 'migration', 'step', 'description', 'status'
        """
        planned = []
        created: Set[str] = set()
        for migration in migrations:
            for step in migration.steps:
                status = step.status(self.inspector, created)
                if isinstance(step, CreateTable) and status == PENDING:
                    created.add(step.table)
                planned.append({
                    "migration": migration.name,
                    "step": step,
                    "description": step.describe(),
                    "status": status,
                })
        return planned

    def apply(self, migrations: Sequence[Migration], dry_run: bool = False) -> Dict[str, Any]:
        """Run the pending steps of *migrations* in one transaction.

        Args:
            migrations: Migrations to apply, in order
            dry_run: Plan only

        Returns:
            Dict with 'applied', 'skipped', 'blocked' (step descriptions)
            and 'dry_run'
        """
        planned = self.plan(migrations)
        result = {
            "applied": [],
            "skipped": [p["description"] for p in planned if p["status"] == APPLIED],
            "blocked": [p["description"] for p in planned if p["status"] == BLOCKED],
            "dry_run": dry_run,
        }
        pending = [p for p in planned if p["status"] == PENDING]

        for item in result["blocked"]:
            logger.warning("Blocked (table missing): %s", item)

        if dry_run:
            result["applied"] = [p["description"] for p in pending]
            return result

        with self.database.transaction() as tx:
            for item in pending:
                if self._progress_callback:
                    self._progress_callback(item["migration"], item["description"])
                step = item["step"]
                if isinstance(step, SeedRows):
                    for sql, row in step.statements():
                        tx.execute(sql, row)
                else:
                    tx.execute_ddl(step.sql(self.database.dialect_name))
                logger.info("[%s] %s", item["migration"], item["description"])
                result["applied"].append(item["description"])

        return result

    def missing_tables(self, migrations: Sequence[Migration]) -> List[str]:
        """Tables the migrations would create that the database lacks."""
        return self.inspector.missing_tables(expected_tables(migrations))
