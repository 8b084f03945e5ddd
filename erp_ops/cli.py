"""CLI commands for operational tools.

Every command resolves its target database from ``--env`` (local, test,
demo, prod), prints human-readable output and exits 0 on success or 1 on
failure. Commands that change data default to a dry run and only write
when ``--execute`` is given.
"""

from __future__ import annotations

import functools
import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
from dotenv import load_dotenv
from tabulate import tabulate

from erp_ops.core.database import Database, close_all, get_database

load_dotenv()

logger = logging.getLogger(__name__)

ENV_CHOICES = ["local", "test", "demo", "prod"]


def handle_errors(func):
    """Report any failure as ``Error: ...`` on stderr and exit 1; close pools."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (click.ClickException, click.Abort):
            raise
        except Exception as e:
            logger.debug("Command failed", exc_info=True)
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        finally:
            close_all()

    return wrapper


def env_option(func):
    return click.option(
        "--env", "env", type=click.Choice(ENV_CHOICES), default=None,
        help="Target environment (default: DATABASE_URL, else by NODE_ENV/APP_ENV)",
    )(func)


def execute_option(func):
    return click.option(
        "--dry-run/--execute", "dry_run", default=True,
        help="Preview only (default) or apply the changes",
    )(func)


def open_database(env: Optional[str]) -> Database:
    """Connect and print which database is targeted."""
    database = get_database(env)
    target = database.target
    label = env or "default"
    click.echo(f"Target [{label}]: {target['display']}")
    return database


def confirm_production(database: Database, env: Optional[str], yes: bool) -> bool:
    """Warn on production targets and ask unless --yes was given."""
    if env != "prod" and not database.target["is_production"]:
        return True
    click.echo(click.style("\nWARNING: Production database detected!", fg="red", bold=True))
    if yes:
        return True
    if not click.confirm("Continue against production?"):
        click.echo("Aborted.")
        return False
    return True


def echo_dry_run(dry_run: bool) -> None:
    if dry_run:
        click.echo("\n(Dry run - no changes made. Use --execute to apply.)")


# ---------------------------------------------------------------------------
# Click CLI Group
# ---------------------------------------------------------------------------

@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """Operational database tools for the logistics ERP."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@cli.command("test-connection")
@env_option
@handle_errors
def test_connection(env: Optional[str]):
    """Check that the target database answers."""
    database = open_database(env)
    result = database.test_connection()
    if not result["success"]:
        click.echo(f"Error: {result['error']}", err=True)
        sys.exit(1)
    click.echo(f"Connected to {result['database']} ({result['version']})")


# ---------------------------------------------------------------------------
# Migrations
# ---------------------------------------------------------------------------

@cli.command()
@click.argument("names", nargs=-1)
@click.option("--list", "list_only", is_flag=True, help="List migrations and their status")
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@env_option
@execute_option
@handle_errors
def migrate(names: Tuple[str, ...], list_only: bool, yes: bool, env: Optional[str], dry_run: bool):
    """Apply idempotent schema migrations (all when NAMES is empty)."""
    from erp_ops.operations.migrations import PENDING, MigrationRunner, get_migrations

    migrations = get_migrations(list(names))
    database = open_database(env)
    runner = MigrationRunner(database)

    plan = runner.plan(migrations)
    missing = runner.missing_tables(migrations)
    if missing:
        click.echo(f"\nMissing tables: {', '.join(missing)}")

    rows = [(p["migration"], p["description"], p["status"]) for p in plan]
    click.echo("\n" + tabulate(rows, headers=["Migration", "Step", "Status"], tablefmt="simple"))

    pending = [p for p in plan if p["status"] == PENDING]
    if list_only:
        return
    if not pending:
        click.echo("\nSchema is up to date.")
        return
    if dry_run:
        echo_dry_run(True)
        return
    if not confirm_production(database, env, yes):
        return

    runner.set_progress_callback(lambda name, step: click.echo(f"  [{name}] {step}"))
    result = runner.apply(migrations)
    click.echo(f"\nApplied {len(result['applied'])} step(s).")
    if result["blocked"]:
        click.echo(click.style(
            f"Blocked (table missing): {', '.join(result['blocked'])}", fg="yellow"
        ))


# ---------------------------------------------------------------------------
# Order sequences
# ---------------------------------------------------------------------------

@cli.command("sequence-check")
@env_option
@handle_errors
def sequence_check(env: Optional[str]):
    """Report gaps and duplicates in bills_of_lading.order_seq."""
    from erp_ops.operations.sequences import SequenceAuditor

    report = SequenceAuditor(open_database(env)).audit()

    click.echo(f"\nBills: {report['total']}  (without order_seq: {report['missing_seq']})")
    click.echo(f"Max order_seq: {report['max_seq']}")
    click.echo(f"Counter (BILL): {report['counter'] if report['counter'] is not None else 'missing'}")

    if report["gap_ranges"]:
        click.echo(f"\nGaps ({len(report['gaps'])} values):")
        for first, last in report["gap_ranges"][:50]:
            click.echo(f"  {first}" if first == last else f"  {first}-{last}")
        if len(report["gap_ranges"]) > 50:
            click.echo(f"  ... and {len(report['gap_ranges']) - 50} more ranges")

    if report["duplicates"]:
        click.echo(f"\nDuplicates ({len(report['duplicates'])}):")
        rows = [(d["order_seq"], d["count"], ", ".join(d["bill_numbers"])) for d in report["duplicates"]]
        click.echo(tabulate(rows, headers=["order_seq", "count", "bills"], tablefmt="simple"))

    if report["mismatched"]:
        click.echo(f"\nNumber does not match order_seq ({len(report['mismatched'])}):")
        for m in report["mismatched"][:50]:
            click.echo(f"  {m['bill_number']}: order_seq {m['order_seq']}")

    if report["counter_behind"]:
        click.echo(click.style(
            "\nCounter is behind MAX(order_seq). Run sequence-sync --execute.", fg="yellow"
        ))

    if report["ok"]:
        click.echo(click.style("\nSequence is consistent.", fg="green"))
    else:
        sys.exit(1)


@cli.command("sequence-sync")
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@env_option
@execute_option
@handle_errors
def sequence_sync(yes: bool, env: Optional[str], dry_run: bool):
    """Raise the BILL counter to MAX(order_seq) when it lags."""
    from erp_ops.operations.sequences import SequenceAllocator

    database = open_database(env)
    if not dry_run and not confirm_production(database, env, yes):
        return
    result = SequenceAllocator(database).sync_with_max(dry_run=dry_run)
    click.echo(f"\nCounter: {result['counter']}  Max order_seq: {result['max_seq']}")
    if not result["needs_update"]:
        click.echo("Counter is up to date.")
    elif result["updated"]:
        click.echo(f"Counter raised to {result['max_seq']}.")
    else:
        click.echo(f"Counter would be raised to {result['max_seq']}.")
        echo_dry_run(dry_run)


@cli.command("sequence-next")
@click.option("--type", "kind", type=click.Choice(["bill", "inquiry"]), default="bill")
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@env_option
@execute_option
@handle_errors
def sequence_next(kind: str, yes: bool, env: Optional[str], dry_run: bool):
    """Allocate (or preview) the next order number."""
    from erp_ops.operations.sequences import SequenceAllocator

    database = open_database(env)
    if not dry_run and not confirm_production(database, env, yes):
        return
    allocator = SequenceAllocator(database)
    if kind == "bill":
        result = allocator.next_bill_number(dry_run=dry_run)
    else:
        result = allocator.next_inquiry_number(dry_run=dry_run)
    verb = "Next" if dry_run else "Allocated"
    click.echo(f"{verb}: {result['number']} (seq {result['seq']})")
    echo_dry_run(dry_run)


# ---------------------------------------------------------------------------
# HS codes
# ---------------------------------------------------------------------------

@cli.command("hs-analyze")
@click.option("--country", help="Origin country code for the chapter breakdown")
@env_option
@handle_errors
def hs_analyze(country: Optional[str], env: Optional[str]):
    """HS code length and ten-digit coverage statistics."""
    from erp_ops.operations.hs_codes import HsCodeAnalyzer

    report = HsCodeAnalyzer(open_database(env)).report(country=country)
    t = report["totals"]
    click.echo("\nTariff rates:")
    click.echo(f"  total: {t.get('total', 0)}  unique codes: {t.get('unique_codes', 0)}")
    click.echo(f"  with hs_code_10: {t.get('with_10', 0)}  without: {t.get('without_10', 0)}")
    click.echo(
        f"  8-digit: {t.get('len_8', 0)}  10-digit: {t.get('len_10', 0)}  shorter: {t.get('shorter', 0)}"
    )

    if report["by_country"]:
        click.echo("\nBy origin country:")
        rows = [(r["country"], r["total"], r["with_10"], r["without_10"]) for r in report["by_country"]]
        click.echo(tabulate(rows, headers=["Country", "Total", "With 10", "Without 10"], tablefmt="simple"))

    if report["chapters_needing_update"]:
        click.echo("\nChapters still missing hs_code_10:")
        rows = [(r["chapter"], r["missing"]) for r in report["chapters_needing_update"]]
        click.echo(tabulate(rows, headers=["Chapter", "Rows"], tablefmt="simple"))


@cli.command("hs-normalize")
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@env_option
@execute_option
@handle_errors
def hs_normalize(yes: bool, env: Optional[str], dry_run: bool):
    """Pad stored HS codes to ten digits."""
    from erp_ops.operations.hs_codes import HsCodeNormalizer

    database = open_database(env)
    normalizer = HsCodeNormalizer(database)

    plan = normalizer.plan()
    click.echo("")
    for item in plan:
        click.echo(f"  {item['table']}.{item['column']}: {item['rows']} row(s) to update")
        for old, new in item["samples"]:
            click.echo(f"      {old} -> {new}")

    if not any(item["rows"] for item in plan):
        click.echo("\nAll HS codes are already ten digits.")
        return
    if dry_run:
        echo_dry_run(True)
        return
    if not confirm_production(database, env, yes):
        return

    updated = normalizer.apply()
    click.echo(f"\nUpdated {sum(updated.values())} row(s).")
    click.echo("\nVerification:")
    rows = [(v["table"], v["column"], v["total"], v["ten_digit"], v["other"]) for v in normalizer.verify()]
    click.echo(tabulate(rows, headers=["Table", "Column", "Values", "10-digit", "Other"], tablefmt="simple"))


@cli.command("hs-sync-10")
@click.option("--country", default="CN", show_default=True, help="Origin country code")
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@env_option
@execute_option
@handle_errors
def hs_sync_10(country: str, yes: bool, env: Optional[str], dry_run: bool):
    """Copy ten-digit hs_code values into empty hs_code_10."""
    from erp_ops.operations.hs_codes import HsCodeNormalizer

    database = open_database(env)
    if not dry_run and not confirm_production(database, env, yes):
        return
    result = HsCodeNormalizer(database).sync_hs_code_10(country=country, dry_run=dry_run)

    click.echo(f"\nCandidates: {result['candidates']}")
    if result["preview"]:
        rows = [(r["id"], r["hs_code"], (r["goods_description"] or "")[:40]) for r in result["preview"]]
        click.echo(tabulate(rows, headers=["id", "hs_code", "description"], tablefmt="simple"))
    if not dry_run:
        click.echo(f"\nUpdated {result['updated']} row(s).")
    echo_dry_run(dry_run)


@cli.command("hs-match")
@click.option("--code", "customer_hs_code", help="Customer supplied HS code")
@click.option("--name", "product_name", help="Product name")
@click.option("--material", help="Material")
@click.option("--origin", "origin_country", default="CN", show_default=True)
@env_option
@handle_errors
def hs_match(customer_hs_code, product_name, material, origin_country, env):
    """Match a product to a tariff row."""
    from erp_ops.operations.hs_codes import HsCodeMatcher

    if not customer_hs_code and not product_name:
        raise click.UsageError("Give --code and/or --name")

    result = HsCodeMatcher(open_database(env)).match({
        "customer_hs_code": customer_hs_code,
        "product_name": product_name,
        "material": material,
        "origin_country": origin_country,
    })
    if not result["hs_code"]:
        click.echo("No match.")
        sys.exit(1)

    click.echo(f"HS code: {result['hs_code']}  ({result['source']}, confidence {result['confidence']})")
    tariff = result["tariff"]
    if tariff:
        click.echo(f"  {tariff['product_name'] or ''}")
        click.echo(
            f"  duty {tariff['duty_rate']}%  VAT {tariff['vat_rate']}%  "
            f"anti-dumping {tariff['anti_dumping_rate']}%"
        )


# ---------------------------------------------------------------------------
# TARIC
# ---------------------------------------------------------------------------

@cli.command("taric-validate")
@click.option("--limit", type=int, help="Maximum number of codes")
@click.option("--country", help="Origin country code")
@click.option("--chapter", help="Two-digit chapter")
@click.option("--report", "report_path", type=click.Path(), default="exports/hscode-validation-report.json",
              show_default=True, help="JSON report path")
@env_option
@handle_errors
def taric_validate(limit, country, chapter, report_path, env):
    """Validate stored HS codes against the TARIC nomenclature."""
    from config import load_config
    from erp_ops.operations.taric import TaricClient, TaricValidator

    settings = load_config().taric
    validator = TaricValidator(
        TaricClient(settings.api_base, timeout=settings.timeout),
        database=open_database(env),
        delay=settings.request_delay,
    )

    def progress(current, total):
        if current % 50 == 0 or current == total:
            click.echo(f"  Validated {current}/{total}")

    validator.set_progress_callback(progress)
    report = validator.run(limit=limit, country=country, chapter=chapter)

    s = report["summary"]
    click.echo(f"\nTotal: {s['total']}")
    click.echo(f"  valid: {s['valid']} ({s['valid_rate']}%)")
    click.echo(f"    declarable: {s['declarable']}  parent codes: {s['parent_codes']}")
    click.echo(f"  invalid: {s['invalid']} ({s['invalid_rate']}%)")
    click.echo(f"  lookup errors: {s['errors']}")

    if report["parent_codes"]:
        click.echo("\nParent codes (choose a declarable child):")
        rows = [
            (p["hs_code"], p["hs_code_10"] or "-", p["country"] or "-",
             ", ".join(c["code"] or "" for c in p["child_codes"][:2]) or "-")
            for p in report["parent_codes"][:30]
        ]
        click.echo(tabulate(rows, headers=["hs_code", "hs_code_10", "Origin", "Children"], tablefmt="simple"))

    if report["invalid_codes"]:
        click.echo("\nInvalid codes:")
        rows = [
            (i["hs_code"], i["hs_code_10"] or "-", i["country"] or "-", (i["description"] or "")[:30])
            for i in report["invalid_codes"][:50]
        ]
        click.echo(tabulate(rows, headers=["hs_code", "hs_code_10", "Origin", "Description"], tablefmt="simple"))

    for item in report["error_codes"][:20]:
        click.echo(f"  {item['code']}: {item['error']}", err=True)

    path = TaricValidator.save_report(report, Path(report_path))
    click.echo(f"\nReport saved to: {path}")


@cli.command("taric-import")
@click.argument("file", type=click.Path(exists=True))
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@env_option
@execute_option
@handle_errors
def taric_import(file: str, yes: bool, env: Optional[str], dry_run: bool):
    """Import a TARIC nomenclature spreadsheet into hs_codes."""
    from erp_ops.operations.taric import TaricImporter

    database = None
    if not dry_run:
        database = open_database(env)
        if not confirm_production(database, env, yes):
            return
    importer = TaricImporter(database)
    result = importer.import_file(Path(file), dry_run=dry_run)

    click.echo("Detected columns:")
    for role, header in result["columns"].items():
        click.echo(f"  {role}: {header or '-'}")
    click.echo(f"\nCodes: {len(result['records'])}  skipped (< 6 digits): {result['skipped']}")
    if not dry_run:
        click.echo(f"Imported: {result['imported']}")
    echo_dry_run(dry_run)


# ---------------------------------------------------------------------------
# Excel sync
# ---------------------------------------------------------------------------

@cli.command("excel-sync")
@click.argument("file", type=click.Path(exists=True))
@click.option("--mapping", "-m", required=True, type=click.Path(exists=True),
              help="YAML file mapping sheet headers to columns")
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@env_option
@execute_option
@handle_errors
def excel_sync(file: str, mapping: str, yes: bool, env: Optional[str], dry_run: bool):
    """Update database fields that differ from a spreadsheet."""
    from erp_ops.operations.excel_sync import ExcelFieldSync, load_mapping

    database = open_database(env)
    sync = ExcelFieldSync(database, load_mapping(Path(mapping)))
    diff = sync.diff(Path(file))

    for record in diff["records"]:
        for change in record["changes"]:
            click.echo(f"  {record['key']}.{change['header']}: {change['old']} -> {change['new']}")

    click.echo(f"\nRows in sheet: {diff['total_rows']}")
    click.echo(f"Records to update: {len(diff['records'])}  field updates: {diff['field_updates']}")
    click.echo(f"Unchanged: {diff['unchanged']}  not in database: {len(diff['missing_keys'])}")
    if diff["missing_keys"]:
        shown = diff["missing_keys"][:20]
        click.echo(f"  {', '.join(shown)}" + (" ..." if len(diff["missing_keys"]) > 20 else ""))
    if diff["missing_headers"]:
        click.echo(click.style(f"Headers not in sheet: {', '.join(diff['missing_headers'])}", fg="yellow"))

    if not diff["records"]:
        return
    if dry_run:
        echo_dry_run(True)
        return
    if not confirm_production(database, env, yes):
        return
    updated = sync.apply(diff)
    click.echo(f"\nUpdated {updated} record(s).")


# ---------------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------------

@cli.command("env-diff")
@click.option("--envs", default="local,prod", show_default=True,
              help="Comma separated environments; the first is the reference")
@handle_errors
def env_diff(envs: str):
    """Compare table structures between environments."""
    from erp_ops.operations.env_sync import EnvironmentComparer

    names = [n.strip() for n in envs.split(",") if n.strip()]
    databases = {name: get_database(name) for name in names}
    result = EnvironmentComparer(databases).compare()

    identical = True
    for name, diff in result["environments"].items():
        click.echo(f"\n{name} vs {result['reference']}:")
        if diff["missing_tables"]:
            identical = False
            click.echo(f"  Missing tables: {', '.join(diff['missing_tables'])}")
        if diff["extra_tables"]:
            click.echo(f"  Extra tables: {', '.join(diff['extra_tables'])}")
        for table, table_diff in diff["tables"].items():
            if table_diff["missing_columns"] or table_diff["missing_indexes"]:
                identical = False
            click.echo(f"  {table}:")
            for label, key in (("missing columns", "missing_columns"),
                               ("extra columns", "extra_columns"),
                               ("missing indexes", "missing_indexes"),
                               ("extra indexes", "extra_indexes")):
                if table_diff[key]:
                    click.echo(f"    {label}: {', '.join(table_diff[key])}")
        if not diff["missing_tables"] and not diff["extra_tables"] and not diff["tables"]:
            click.echo("  identical")

    if not identical:
        sys.exit(1)


@cli.command("sync-base-data")
@click.option("--source", type=click.Choice(ENV_CHOICES), default="local", show_default=True)
@click.option("--target", type=click.Choice(ENV_CHOICES), default="prod", show_default=True)
@click.option("--table", "tables", multiple=True, help="Limit to table (repeatable)")
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@execute_option
@handle_errors
def sync_base_data(source: str, target: str, tables: Tuple[str, ...], yes: bool, dry_run: bool):
    """Upsert reference tables from one environment into another."""
    from erp_ops.operations.env_sync import BaseDataSync

    if source == target:
        raise click.UsageError("--source and --target must differ")

    source_db = get_database(source)
    target_db = get_database(target)
    click.echo(f"Source [{source}]: {source_db.target['display']}")
    click.echo(f"Target [{target}]: {target_db.target['display']}")
    if not dry_run and not confirm_production(target_db, target, yes):
        return

    syncer = BaseDataSync(source_db, target_db)
    syncer.set_progress_callback(lambda name, r: click.echo(
        f"  {name}: {r['status']}  source {r['source_rows']}  target {r['target_rows']}  "
        f"insert {r['inserted']}  update {r['updated']}"
        + (f"  ({r['error']})" if r["error"] else "")
    ))
    result = syncer.sync(list(tables), dry_run=dry_run)

    click.echo(f"\nInserted: {result['inserted']}  Updated: {result['updated']}")
    echo_dry_run(dry_run)
    if result["failed"]:
        click.echo(f"Failed tables: {', '.join(result['failed'])}", err=True)
        sys.exit(1)


@cli.command("export-base-data")
@click.argument("tables", nargs=-1)
@click.option("--out", "out_dir", type=click.Path(), default="exports/base-data", show_default=True)
@env_option
@handle_errors
def export_base_data(tables: Tuple[str, ...], out_dir: str, env: Optional[str]):
    """Export reference tables as INSERT ... ON CONFLICT DO NOTHING files."""
    from erp_ops.operations.env_sync import BaseDataExporter

    exporter = BaseDataExporter(open_database(env))
    for result in exporter.export(list(tables), Path(out_dir)):
        if result["path"] is None:
            click.echo(f"  {result['table']}: not found, skipped")
        else:
            click.echo(f"  {result['table']}: {result['rows']} rows -> {result['path']}")


@cli.command("load-sql")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--yes", "-y", is_flag=True, help="Skip production confirmation")
@env_option
@execute_option
@handle_errors
def load_sql(files: Tuple[str, ...], yes: bool, env: Optional[str], dry_run: bool):
    """Replay exported SQL files against a database."""
    from erp_ops.core.database_inspector import DatabaseInspector
    from erp_ops.operations.env_sync import execute_sql_file

    database = open_database(env)
    if not dry_run and not confirm_production(database, env, yes):
        return

    inspector = DatabaseInspector(database)
    for file in files:
        path = Path(file)
        result = execute_sql_file(database, path, dry_run=dry_run)
        line = f"  {path.name}: {result['statements']} statement(s)"
        if not dry_run:
            line += f", {result['executed']} executed, {result['skipped']} duplicate(s) skipped"
            table = path.stem
            if inspector.has_table(table):
                line += f", {inspector.count_rows(table)} rows in {table}"
        click.echo(line)
    echo_dry_run(dry_run)


# ---------------------------------------------------------------------------
# Backup Commands
# ---------------------------------------------------------------------------

def _backup_manager(env: Optional[str], record: bool = False):
    from config import load_config
    from erp_ops.core.backup import BackupManager

    settings = load_config().backup
    database = open_database(env)
    return BackupManager(
        database.url,
        backup_dir=Path(settings.backup_dir),
        retention_days=settings.retention_days,
        max_count=settings.max_count,
        database=database if record and settings.record_in_database else None,
    )


@cli.command()
@click.option("--kind", type=click.Choice(["full", "data"]), default="full", show_default=True)
@click.option("--no-record", is_flag=True, help="Do not log the run in backup_records")
@click.option("--cleanup/--no-cleanup", default=True, help="Apply retention after the backup")
@env_option
@handle_errors
def backup(kind: str, no_record: bool, cleanup: bool, env: Optional[str]):
    """Create a compressed database backup."""
    manager = _backup_manager(env, record=not no_record)
    backup_path = manager.create_backup(kind=kind)
    size_kb = backup_path.stat().st_size / 1024
    click.echo(f"Backup created: {backup_path} ({size_kb:.1f} KB)")
    if not manager.verify_backup(backup_path):
        click.echo(click.style("Warning: backup does not look like a SQL dump", fg="yellow"))
    if cleanup:
        for path in manager.cleanup_old_backups():
            click.echo(f"  Removed old backup: {path.name}")


@cli.command("list-backups")
@env_option
@handle_errors
def list_backups(env: Optional[str]):
    """List available backups."""
    backups = _backup_manager(env).list_backups()

    if not backups:
        click.echo("No backups found.")
        return

    click.echo("Available backups:")
    for path, mtime in backups:
        size_kb = path.stat().st_size / 1024
        click.echo(f"  {path.name}  ({mtime:%Y-%m-%d %H:%M})  {size_kb:.1f} KB")


@cli.command("cleanup-backups")
@env_option
@execute_option
@handle_errors
def cleanup_backups(env: Optional[str], dry_run: bool):
    """Remove backups beyond the retention policy."""
    manager = _backup_manager(env)
    removed = manager.cleanup_old_backups(dry_run=dry_run)
    if not removed:
        click.echo("Nothing to remove.")
        return
    for path in removed:
        click.echo(f"  {path.name}")
    click.echo(f"\n{len(removed)} backup(s) {'would be ' if dry_run else ''}removed.")
    echo_dry_run(dry_run)


@cli.command()
@click.argument("backup_file", type=click.Path(exists=True))
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@env_option
@handle_errors
def restore(backup_file: str, yes: bool, env: Optional[str]):
    """Restore database from backup."""
    manager = _backup_manager(env)
    path = Path(backup_file)
    if not manager.verify_backup(path):
        raise click.ClickException(f"{path.name} does not look like a SQL dump")

    if not yes and not click.confirm(f"Restore from {backup_file}? This will overwrite current data."):
        click.echo("Aborted.")
        return

    manager.restore_backup(path)
    click.echo("Database restored successfully.")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@cli.command("fee-names-report")
@env_option
@handle_errors
def fee_names_report(env: Optional[str]):
    """List fee items and products without an English name."""
    from erp_ops.operations.maintenance import MaintenanceTool

    report = MaintenanceTool(open_database(env)).missing_english_names()

    for table, rows in report["fees"].items():
        click.echo(f"\n{table}: {len(rows)} name(s) without English")
        if rows:
            click.echo(tabulate([(r["name"], r["count"]) for r in rows],
                                headers=["Name", "Rows"], tablefmt="simple"))

    click.echo(f"\nproducts: {len(report['products'])} without English name")
    if report["products"]:
        click.echo(tabulate([(p["product_code"], p["product_name"]) for p in report["products"]],
                            headers=["Code", "Name"], tablefmt="simple"))

    unique = report["unique_fee_names"]
    click.echo(f"\nUnique fee names to translate: {len(unique)}")
    if unique:
        click.echo(tabulate([(u["name"], u["count"], ", ".join(u["sources"])) for u in unique],
                            headers=["Name", "Rows", "Sources"], tablefmt="simple"))


@cli.command()
@env_option
@handle_errors
def stats(env: Optional[str]):
    """Show database statistics."""
    from erp_ops.operations.maintenance import MaintenanceTool

    stats = MaintenanceTool(open_database(env)).get_statistics()

    click.echo("Database Statistics:")
    click.echo("-" * 40)
    for category, values in stats.items():
        click.echo(f"\n{category.replace('_', ' ').title()}:")
        for key, value in values.items():
            click.echo(f"  {key}: {value}")


@cli.command()
@click.argument("table")
@click.option("--output", "-o", type=click.Path(), help="Output file path")
@env_option
@handle_errors
def export(table: str, output: Optional[str], env: Optional[str]):
    """Export a table to CSV."""
    from erp_ops.operations.maintenance import MaintenanceTool

    output_path = output or f"{table}_export.csv"
    result = MaintenanceTool(open_database(env)).export_table_to_csv(table, output_path)

    if result["success"]:
        click.echo(f"Exported {result['count']} records to {output_path}")
    else:
        click.echo(f"Error: {result['error']}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("sql")
@env_option
@handle_errors
def query(sql: str, env: Optional[str]):
    """Execute a read-only SQL query."""
    from erp_ops.operations.maintenance import MaintenanceTool

    result = MaintenanceTool(open_database(env)).execute_read_only_query(sql)

    if not result["success"]:
        click.echo(f"Error: {result['error']}", err=True)
        sys.exit(1)

    if not result["rows"]:
        click.echo("No results.")
        return

    click.echo(tabulate(result["rows"], headers=result["columns"], tablefmt="simple"))
    click.echo(f"\n({result['row_count']} rows)")


if __name__ == "__main__":
    cli()
