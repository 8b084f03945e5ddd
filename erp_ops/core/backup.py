"""Backup and restore utilities for PostgreSQL targets."""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import subprocess
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

from sqlalchemy.exc import SQLAlchemyError

from erp_ops.config import BACKUP_DIR, BACKUP_MAX_COUNT, BACKUP_RETENTION_DAYS
from erp_ops.core.database import Database

logger = logging.getLogger(__name__)

BACKUP_KINDS = ("full", "data")


class BackupError(RuntimeError):
    """Raised when pg_dump or psql fails."""


class BackupManager:
    """Manages compressed pg_dump backups with retention cleanup."""

    def __init__(
        self,
        database_uri: str,
        backup_dir: Optional[Path] = None,
        retention_days: int = BACKUP_RETENTION_DAYS,
        max_count: int = BACKUP_MAX_COUNT,
        database: Optional[Database] = None,
    ):
        """Initialize backup manager.

        Args:
            database_uri: PostgreSQL connection string
            backup_dir: Directory to store backups (default: ./backups)
            retention_days: Maximum age of backups in days
            max_count: Maximum number of backups to keep
            database: When given, each run is recorded in backup_records
        """
        self.database_uri = database_uri
        self.backup_dir = Path(backup_dir) if backup_dir else BACKUP_DIR
        self.retention_days = retention_days
        self.max_count = max_count
        self.database = database
        self._parsed_uri = urlparse(database_uri)

    def _ensure_backup_dir(self) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def _generate_backup_filename(self, kind: str) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"backup_{kind}_{timestamp}.sql.gz"

    def _connection_args(self) -> Tuple[List[str], Dict[str, str]]:
        """Host/port/user/db arguments and the environment carrying the password."""
        host = self._parsed_uri.hostname or "localhost"
        port = self._parsed_uri.port or 5432
        user = unquote(self._parsed_uri.username or "postgres")
        password = self._parsed_uri.password
        dbname = self._parsed_uri.path.lstrip("/")

        env = os.environ.copy()
        if password:
            env["PGPASSWORD"] = unquote(password)
        if "sslmode=require" in (self._parsed_uri.query or ""):
            env["PGSSLMODE"] = "require"

        args = ["-h", host, "-p", str(port), "-U", user, "-d", dbname]
        return args, env

    def build_dump_command(self, output_path: Path, kind: str = "full") -> List[str]:
        """pg_dump command line for *kind* ('full' or 'data')."""
        args, _ = self._connection_args()
        cmd = ["pg_dump", *args, "-f", str(output_path),
               "--format=plain", "--no-owner", "--no-acl"]
        if kind == "data":
            cmd.append("--data-only")
        return cmd

    # ------------------------------------------------------------------
    # Run records
    # ------------------------------------------------------------------

    def _record_start(self, kind: str, filename: str) -> Optional[Any]:
        if self.database is None:
            return None
        try:
            row = self.database.fetch_one(
                "INSERT INTO backup_records (backup_type, file_name, status, started_at) "
                "VALUES (?, ?, 'running', CURRENT_TIMESTAMP) RETURNING id",
                kind, filename,
            )
        except SQLAlchemyError as e:
            logger.warning("Could not record backup start: %s", e)
            return None
        return row["id"] if row else None

    def _record_finish(
        self, record_id: Any, status: str, path: Optional[Path] = None,
        error: Optional[str] = None,
    ) -> None:
        if self.database is None or record_id is None:
            return
        size = path.stat().st_size if path and path.exists() else None
        try:
            self.database.execute(
                "UPDATE backup_records SET status = ?, file_path = ?, file_size = ?, "
                "error_message = ?, completed_at = CURRENT_TIMESTAMP WHERE id = ?",
                status, str(path) if path else None, size, error, record_id,
            )
        except SQLAlchemyError as e:
            logger.warning("Could not record backup %s: %s", status, e)

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    def create_backup(self, kind: str = "full") -> Path:
        """Create a gzip-compressed plain SQL dump.

        Args:
            kind: 'full' (schema and data) or 'data' (--data-only)

        Returns:
            Path to the created .sql.gz file

        Raises:
            ValueError: If *kind* is unknown
            BackupError: If pg_dump fails or is not installed
        """
        if kind not in BACKUP_KINDS:
            raise ValueError(f"Unknown backup kind: {kind}")

        self._ensure_backup_dir()
        filename = self._generate_backup_filename(kind)
        backup_path = self.backup_dir / filename
        raw_path = backup_path.with_suffix("")  # drops .gz

        record_id = self._record_start(kind, filename)
        _, env = self._connection_args()
        cmd = self.build_dump_command(raw_path, kind)
        logger.info("Running pg_dump (%s) into %s", kind, raw_path)

        try:
            try:
                subprocess.run(cmd, env=env, capture_output=True, text=True, check=True)
            except subprocess.CalledProcessError as e:
                raise BackupError(f"pg_dump failed: {e.stderr}")
            except FileNotFoundError:
                raise BackupError("pg_dump not found. Is PostgreSQL client installed?")

            with open(raw_path, "rb") as src, gzip.open(backup_path, "wb") as dst:
                shutil.copyfileobj(src, dst)
            raw_path.unlink()
        except Exception as e:
            for partial in (raw_path, backup_path):
                if partial.exists():
                    partial.unlink()
            self._record_finish(record_id, "failed", error=str(e))
            raise

        self._record_finish(record_id, "completed", backup_path)
        return backup_path

    def restore_backup(self, backup_path: Path) -> None:
        """Restore a database from a .sql or .sql.gz backup with psql.

        Raises:
            BackupError: If restore fails
            FileNotFoundError: If backup file doesn't exist
        """
        if not backup_path.exists():
            raise FileNotFoundError(f"Backup file not found: {backup_path}")

        args, env = self._connection_args()
        temp_path = None
        sql_path = backup_path
        if backup_path.suffix == ".gz":
            handle, temp_name = tempfile.mkstemp(suffix=".sql")
            os.close(handle)
            temp_path = Path(temp_name)
            with gzip.open(backup_path, "rb") as src, open(temp_path, "wb") as dst:
                shutil.copyfileobj(src, dst)
            sql_path = temp_path

        cmd = ["psql", *args, "-v", "ON_ERROR_STOP=1", "-f", str(sql_path)]
        try:
            subprocess.run(cmd, env=env, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise BackupError(f"psql restore failed: {e.stderr}")
        except FileNotFoundError:
            raise BackupError("psql not found. Is PostgreSQL client installed?")
        finally:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def list_backups(self) -> List[Tuple[Path, datetime]]:
        """List all backup files with their timestamps.

        Returns:
            List of (path, modified_time) tuples, sorted newest first
        """
        if not self.backup_dir.exists():
            return []

        backups = []
        for f in self.backup_dir.iterdir():
            if f.is_file() and f.name.startswith("backup_") and (
                f.name.endswith(".sql") or f.name.endswith(".sql.gz")
            ):
                mtime = datetime.fromtimestamp(f.stat().st_mtime)
                backups.append((f, mtime))

        backups.sort(key=lambda x: x[1], reverse=True)
        return backups

    def cleanup_old_backups(self, dry_run: bool = False) -> List[Path]:
        """Remove backups beyond the retention policy.

        A backup goes when it is older than *retention_days* or falls outside
        the newest *max_count*.

        Args:
            dry_run: Only report what would be removed

        Returns:
            List of removed (or removable) backup paths
        """
        backups = self.list_backups()
        removed = []
        cutoff_date = datetime.now() - timedelta(days=self.retention_days)

        for i, (path, mtime) in enumerate(backups):
            if i >= self.max_count or mtime < cutoff_date:
                if not dry_run:
                    path.unlink()
                    logger.info("Removed old backup %s", path.name)
                removed.append(path)

        return removed

    def verify_backup(self, backup_path: Path) -> bool:
        """Check a backup is non-empty and starts like a plain SQL dump."""
        if not backup_path.exists() or backup_path.stat().st_size == 0:
            return False

        opener = gzip.open if backup_path.suffix == ".gz" else open
        try:
            with opener(backup_path, "rt", encoding="utf-8") as f:
                first_line = f.readline()
        except (OSError, UnicodeDecodeError):
            return False
        return first_line.startswith("--") or first_line.startswith("SET")
