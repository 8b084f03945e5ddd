"""Database operations for operational tools."""

from erp_ops.operations.env_sync import BaseDataExporter, BaseDataSync, EnvironmentComparer
from erp_ops.operations.excel_sync import ExcelFieldSync
from erp_ops.operations.hs_codes import HsCodeAnalyzer, HsCodeMatcher, HsCodeNormalizer
from erp_ops.operations.maintenance import MaintenanceTool
from erp_ops.operations.migrations import MigrationRunner
from erp_ops.operations.sequences import SequenceAllocator, SequenceAuditor
from erp_ops.operations.taric import TaricImporter, TaricValidator

__all__ = [
    "BaseDataExporter",
    "BaseDataSync",
    "EnvironmentComparer",
    "ExcelFieldSync",
    "HsCodeAnalyzer",
    "HsCodeMatcher",
    "HsCodeNormalizer",
    "MaintenanceTool",
    "MigrationRunner",
    "SequenceAllocator",
    "SequenceAuditor",
    "TaricImporter",
    "TaricValidator",
]
