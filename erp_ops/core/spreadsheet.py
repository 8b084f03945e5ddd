"""Reading CSV/XLSX files into header lists and row dicts."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import openpyxl


def read_table(
    file_path: Path, sheet: Optional[str] = None
) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Read a spreadsheet by extension.

    Args:
        file_path: Path to a .csv, .xlsx or .xlsm file
        sheet: Worksheet name (first sheet when omitted); ignored for CSV

    Returns:
        Tuple of (headers, rows_as_dicts)

    Raises:
        ValueError: If the extension is not supported
    """
    suffix = file_path.suffix.lower()
    if suffix == ".csv":
        return _read_csv(file_path)
    if suffix in (".xlsx", ".xlsm"):
        return _read_xlsx(file_path, sheet)
    raise ValueError(f"Unsupported file type: {suffix}")


def _read_csv(file_path: Path) -> Tuple[List[str], List[Dict[str, Any]]]:
    rows = []
    headers = []

    with open(file_path, "r", encoding="utf-8-sig") as f:
        # Try to detect delimiter
        sample = f.read(4096)
        f.seek(0)
        try:
            dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
        except csv.Error:
            dialect = csv.excel

        reader = csv.DictReader(f, dialect=dialect)
        headers = [h.strip() for h in (reader.fieldnames or [])]
        reader.fieldnames = headers
        for row in reader:
            rows.append(row)

    return headers, rows


def _read_xlsx(file_path: Path, sheet: Optional[str]) -> Tuple[List[str], List[Dict[str, Any]]]:
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    try:
        ws = wb[sheet] if sheet else wb.worksheets[0]

        rows = []
        headers: List[str] = []

        for i, row in enumerate(ws.iter_rows(values_only=True)):
            if i == 0:
                headers = [
                    str(cell).strip() if cell is not None else f"col_{j}"
                    for j, cell in enumerate(row)
                ]
                continue
            if all(cell is None or cell == "" for cell in row):
                continue
            row_dict = {}
            for j, cell in enumerate(row):
                if j < len(headers):
                    row_dict[headers[j]] = cell
            rows.append(row_dict)
    finally:
        wb.close()

    return headers, rows
