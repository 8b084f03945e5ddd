"""Operational database tools for the logistics ERP.

This package provides CLI tools for:
- Idempotent schema migrations and environment structure comparison
- Order-sequence allocation with gap/duplicate auditing
- HS code normalization, analysis, matching and TARIC validation
- Excel-to-database field diffing and base-data syncs between environments
- PostgreSQL backups and read-only reports
"""

__version__ = "1.0.0"
