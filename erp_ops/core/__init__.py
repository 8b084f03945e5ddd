"""Core utilities for operational tools."""

from erp_ops.core.backup import BackupManager
from erp_ops.core.database import Database, get_database
from erp_ops.core.database_inspector import DatabaseInspector
from erp_ops.core.normalization import normalize_hs_code

__all__ = ["BackupManager", "Database", "DatabaseInspector", "get_database", "normalize_hs_code"]
