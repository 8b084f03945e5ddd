"""Value normalization for HS codes, spreadsheet cells and free-text names.

Spreadsheet exports are messy: dates arrive as Excel serial numbers, as
datetimes or as text; amounts carry currency symbols and thousands separators;
HS codes come with dots, spaces and anywhere from 4 to 10 digits. Everything
here turns such values into one canonical form so they can be compared with
what the database holds.

Example:
    "8471.30.00" → "8471300000"
    45658 (Excel serial) → "2025-01-01"
    "€1,234.50" → 1234.5
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

from erp_ops.config import HS_CODE_LENGTH

logger = logging.getLogger(__name__)

EXCEL_EPOCH = date(1899, 12, 30)

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%d.%m.%Y",
    "%d/%m/%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
)


# ---------------------------------------------------------------------------
# HS codes
# ---------------------------------------------------------------------------

def hs_code_digits(code: Any) -> str:
    """Return only the digits of *code* ('' for None)."""
    if code is None:
        return ""
    return re.sub(r"[^0-9]", "", str(code))


def normalize_hs_code(code: Any) -> Optional[str]:
    """Normalize an HS code to exactly ten digits.

    Non-digits are stripped, short codes are right-padded with zeros and long
    codes are truncated.

    Args:
        code: Raw code (string or number)

    Returns:
        Ten-digit string, or None when the input holds no digits

    Examples:
        >>> normalize_hs_code("8471.30")
        '8471300000'
        >>> normalize_hs_code("847130000099")
        '8471300000'
        >>> normalize_hs_code("n/a") is None
        True
    """
    digits = hs_code_digits(code)
    if not digits:
        return None
    return digits[:HS_CODE_LENGTH].ljust(HS_CODE_LENGTH, "0")


def hs_code_level(code: Any) -> str:
    """Classify a code by its significant length.

    Returns:
        'chapter' (<4 digits), 'subheading' (<=6), 'cn' (<=8) or 'taric'
    """
    length = len(hs_code_digits(code))
    if length < 4:
        return "chapter"
    if length <= 6:
        return "subheading"
    if length <= 8:
        return "cn"
    return "taric"


def split_hs_code(code: Any) -> Dict[str, Optional[str]]:
    """Split a code into its chapter (2), heading (4) and subheading (6) prefixes."""
    normalized = normalize_hs_code(code)
    if normalized is None:
        return {"hs_code": None, "chapter": None, "heading": None, "subheading": None}
    return {
        "hs_code": normalized,
        "chapter": normalized[:2],
        "heading": normalized[:4],
        "subheading": normalized[:6],
    }


# ---------------------------------------------------------------------------
# Spreadsheet cells
# ---------------------------------------------------------------------------

def format_text(value: Any) -> Optional[str]:
    """Trimmed string, None for empty cells."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    result = str(value).strip()
    return result or None


def format_excel_date(value: Any) -> Optional[str]:
    """Convert a spreadsheet date cell to ``YYYY-MM-DD``.

    Accepts datetime/date objects, Excel serial numbers and common text
    formats. Unparseable text is returned trimmed so the diff still shows it.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return (EXCEL_EPOCH + timedelta(days=int(value))).isoformat()

    text_value = str(value).strip()
    if not text_value:
        return None
    if re.fullmatch(r"\d{5}(\.\d+)?", text_value):
        return (EXCEL_EPOCH + timedelta(days=int(float(text_value)))).isoformat()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text_value, fmt).date().isoformat()
        except ValueError:
            continue
    logger.warning("Unrecognized date value: %r", value)
    return text_value


def _parse_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    cleaned = re.sub(r"[€$£¥,\s]", "", str(value))
    try:
        return float(cleaned) if cleaned else None
    except ValueError:
        return None


def format_number(value: Any) -> Optional[float]:
    """Convert an amount cell to float, stripping currency symbols and separators.

    Returns:
        Float value, or None for empty/unparseable input
    """
    result = _parse_number(value)
    if result is None and not is_empty(value):
        logger.warning("Invalid number value: %r", value)
    return result


def _comparable(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        number = float(value)
        return str(int(number)) if number.is_integer() else repr(number)
    return str(value).strip()


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def values_equal(left: Any, right: Any) -> bool:
    """Compare a spreadsheet value with a database value.

    None and empty strings are equal to each other. Otherwise values are
    compared in canonical string form: numbers without a trailing ``.0``
    and dates as ISO strings, so ``12`` equals ``Decimal("12.00")``.
    """
    if is_empty(left) and is_empty(right):
        return True
    if is_empty(left) or is_empty(right):
        return False

    left_number = _parse_number(left) if not isinstance(left, (date, datetime)) else None
    right_number = _parse_number(right) if not isinstance(right, (date, datetime)) else None
    if left_number is not None and right_number is not None and (
        isinstance(left, (int, float, Decimal)) or isinstance(right, (int, float, Decimal))
    ):
        return abs(left_number - right_number) < 1e-9

    return _comparable(left) == _comparable(right)


# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------

def normalize_for_matching(text: str) -> str:
    """Normalize a product or fee name for duplicate detection.

    Rules:
    - Convert to lowercase
    - Replace commas, semicolons and slashes with spaces
    - Collapse whitespace and trim

    Letters and digits are never removed, so "Steel bolt M8" and "steel bolt M10"
    stay different.

    Examples:
        >>> normalize_for_matching("  Customs  Clearance, Fee ")
        'customs clearance fee'
    """
    if not text:
        return ""

    result = str(text).lower()
    result = re.sub(r"[,;/]", " ", result)
    result = re.sub(r"\s+", " ", result)
    return result.strip()
