#!/usr/bin/env python3
"""Standalone CLI runner for the ERP operational tools.

Usage:
    python erp_ops_cli.py --help
    python erp_ops_cli.py migrate --list
    python erp_ops_cli.py sequence-check --env prod
    python erp_ops_cli.py excel-sync shipments.xlsx --mapping mappings/bills_of_lading.example.yaml
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from erp_ops.cli import cli

if __name__ == "__main__":
    cli()
