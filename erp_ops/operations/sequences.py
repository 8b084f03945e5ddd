"""Order-sequence allocation and auditing.

Each business type (``BILL``, ``inquiry``) has one counter row in
``order_sequences``. A value is allocated with a single
``UPDATE ... SET current_seq = current_seq + 1 ... RETURNING`` so two
concurrent allocations can never read the same value. Shipments store the
allocated value in ``bills_of_lading.order_seq``; the auditor reads those
back and reports gaps, duplicates and a counter that lags behind the data.
"""

from __future__ import annotations

import logging
import re
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from erp_ops.config import (
    BILL_BUSINESS_TYPE,
    BILL_NUMBER_PREFIX,
    INQUIRY_BUSINESS_TYPE,
    INQUIRY_NUMBER_PREFIX,
)
from erp_ops.core.database import Database

logger = logging.getLogger(__name__)


class SequenceError(Exception):
    """Raised when a counter row is missing or a value cannot be allocated."""


# ---------------------------------------------------------------------------
# Number formats
# ---------------------------------------------------------------------------

def format_bill_number(seq: int, year: Optional[int] = None) -> str:
    """Bill number: ``BP`` + two-digit year + five-digit sequence (BP2500001)."""
    year = year or datetime.now().year
    return f"{BILL_NUMBER_PREFIX}{year % 100:02d}{seq:05d}"


def format_inquiry_number(seq: int, year: Optional[int] = None) -> str:
    """Inquiry number: ``INQ`` + four-digit year + six-digit sequence."""
    year = year or datetime.now().year
    return f"{INQUIRY_NUMBER_PREFIX}{year}{seq:06d}"


def parse_bill_number(number: str) -> Optional[Tuple[int, int]]:
    """Return (two_digit_year, seq) for a bill number, None if it doesn't match."""
    match = re.fullmatch(rf"{BILL_NUMBER_PREFIX}(\d{{2}})(\d{{5,}})", (number or "").strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


# ---------------------------------------------------------------------------
# Gap / duplicate detection
# ---------------------------------------------------------------------------

def find_gaps(values: Iterable[Optional[int]], start: int = 1) -> List[int]:
    """Missing integers between *start* and the largest value.

    None values are ignored.

    Examples:
        >>> find_gaps([1, 2, 5, 5, 7])
        [3, 4, 6]
    """
    present = {v for v in values if v is not None}
    if not present:
        return []
    return [n for n in range(start, max(present) + 1) if n not in present]


def find_duplicates(values: Iterable[Optional[int]]) -> Dict[int, int]:
    """Values occurring more than once, mapped to their occurrence count."""
    counts = Counter(v for v in values if v is not None)
    return {value: n for value, n in sorted(counts.items()) if n > 1}


def compress_ranges(numbers: Iterable[int]) -> List[Tuple[int, int]]:
    """Collapse sorted integers into inclusive (first, last) runs.

    Examples:
        >>> compress_ranges([3, 4, 5, 9, 11, 12])
        [(3, 5), (9, 9), (11, 12)]
    """
    ranges: List[Tuple[int, int]] = []
    for n in sorted(numbers):
        if ranges and n == ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], n)
        else:
            ranges.append((n, n))
    return ranges


# ---------------------------------------------------------------------------
# Allocator
# ---------------------------------------------------------------------------

class SequenceAllocator:
    """Allocates order numbers from the order_sequences counters."""

    def __init__(self, database: Database):
        self.database = database

    def current_value(self, business_type: str = BILL_BUSINESS_TYPE, runner=None) -> Optional[int]:
        """Current counter value, or None when the row is missing."""
        runner = runner or self.database
        value = runner.fetch_value(
            "SELECT current_seq FROM order_sequences WHERE business_type = ?",
            business_type,
        )
        return int(value) if value is not None else None

    def max_order_seq(self, runner=None) -> int:
        """Highest order_seq stored on bills_of_lading (0 when empty)."""
        runner = runner or self.database
        value = runner.fetch_value("SELECT MAX(order_seq) FROM bills_of_lading")
        return int(value) if value is not None else 0

    def next_value(self, business_type: str = BILL_BUSINESS_TYPE, runner=None) -> int:
        """Atomically increment a counter and return the new value.

        Args:
            business_type: Counter to advance
            runner: Open transaction to run in (own statement when omitted)

        Raises:
            SequenceError: If the counter row does not exist
        """
        runner = runner or self.database
        row = runner.fetch_one(
            "UPDATE order_sequences SET current_seq = current_seq + 1, "
            "updated_at = CURRENT_TIMESTAMP WHERE business_type = ? "
            "RETURNING current_seq",
            business_type,
        )
        if row is None:
            raise SequenceError(f"No order_sequences row for '{business_type}'")
        return int(row["current_seq"])

    def sync_with_max(
        self, business_type: str = BILL_BUSINESS_TYPE, dry_run: bool = False, runner=None
    ) -> Dict[str, Any]:
        """Raise the counter to MAX(order_seq) when it lags; never lowers it.

        Returns:
            Dict with 'counter' (before), 'max_seq', 'updated' and 'dry_run'

        Raises:
            SequenceError: If the counter row does not exist
        """
        runner = runner or self.database
        counter = self.current_value(business_type, runner)
        if counter is None:
            raise SequenceError(f"No order_sequences row for '{business_type}'")
        max_seq = self.max_order_seq(runner)

        updated = False
        if max_seq > counter and not dry_run:
            runner.execute(
                "UPDATE order_sequences SET current_seq = ?, updated_at = CURRENT_TIMESTAMP "
                "WHERE business_type = ? AND current_seq < ?",
                max_seq, business_type, max_seq,
            )
            logger.info("Counter %s raised from %s to %s", business_type, counter, max_seq)
            updated = True

        return {
            "business_type": business_type,
            "counter": counter,
            "max_seq": max_seq,
            "updated": updated,
            "needs_update": max_seq > counter,
            "dry_run": dry_run,
        }

    def next_bill_number(self, year: Optional[int] = None, dry_run: bool = False) -> Dict[str, Any]:
        """Allocate the next bill number after syncing the counter with the data.

        In dry-run mode nothing is written and the value that would be
        allocated is returned.

        Returns:
            Dict with 'seq' and 'number'
        """
        if dry_run:
            counter = self.current_value(BILL_BUSINESS_TYPE)
            if counter is None:
                raise SequenceError(f"No order_sequences row for '{BILL_BUSINESS_TYPE}'")
            seq = max(counter, self.max_order_seq()) + 1
            return {"seq": seq, "number": format_bill_number(seq, year), "dry_run": True}

        with self.database.transaction() as tx:
            self.sync_with_max(BILL_BUSINESS_TYPE, runner=tx)
            seq = self.next_value(BILL_BUSINESS_TYPE, runner=tx)
        return {"seq": seq, "number": format_bill_number(seq, year), "dry_run": False}

    def next_inquiry_number(self, year: Optional[int] = None, dry_run: bool = False) -> Dict[str, Any]:
        """Allocate the next inquiry number (INQ2025000001)."""
        if dry_run:
            counter = self.current_value(INQUIRY_BUSINESS_TYPE)
            if counter is None:
                raise SequenceError(f"No order_sequences row for '{INQUIRY_BUSINESS_TYPE}'")
            seq = counter + 1
            return {"seq": seq, "number": format_inquiry_number(seq, year), "dry_run": True}

        seq = self.next_value(INQUIRY_BUSINESS_TYPE)
        return {"seq": seq, "number": format_inquiry_number(seq, year), "dry_run": False}


# ---------------------------------------------------------------------------
# Auditor
# ---------------------------------------------------------------------------

class SequenceAuditor:
    """Reports gaps and duplicates in bills_of_lading.order_seq."""

    def __init__(self, database: Database, allocator: Optional[SequenceAllocator] = None):
        self.database = database
        self.allocator = allocator or SequenceAllocator(database)

    def audit(self, business_type: str = BILL_BUSINESS_TYPE) -> Dict[str, Any]:
        """Check stored sequence values against each other and the counter.

        Returns:
            Dict with 'total', 'missing_seq' (rows without a value), 'max_seq',
            'counter', 'gaps', 'gap_ranges', 'duplicates' (list of
            {'order_seq', 'count', 'bill_numbers'}), 'mismatched' (bills whose number
            encodes a different sequence than order_seq), 'counter_behind' and 'ok'
        """
        rows = self.database.fetch_all(
            "SELECT bill_number, order_seq FROM bills_of_lading ORDER BY order_seq, bill_number"
        )
        values = [r["order_seq"] for r in rows if r["order_seq"] is not None]
        missing_seq = sum(1 for r in rows if r["order_seq"] is None)

        by_value: Dict[int, List[str]] = defaultdict(list)
        for r in rows:
            if r["order_seq"] is not None:
                by_value[int(r["order_seq"])].append(r["bill_number"])

        gaps = find_gaps(values)
        duplicates = [
            {"order_seq": value, "count": count, "bill_numbers": by_value[value]}
            for value, count in find_duplicates(values).items()
        ]
        mismatched = []
        for r in rows:
            parsed = parse_bill_number(r["bill_number"])
            if parsed and r["order_seq"] is not None and parsed[1] != int(r["order_seq"]):
                mismatched.append({"bill_number": r["bill_number"], "order_seq": r["order_seq"]})
        max_seq = max(values) if values else 0
        counter = self.allocator.current_value(business_type)
        counter_behind = counter is not None and counter < max_seq

        report = {
            "total": len(rows),
            "missing_seq": missing_seq,
            "max_seq": max_seq,
            "counter": counter,
            "gaps": gaps,
            "gap_ranges": compress_ranges(gaps),
            "duplicates": duplicates,
            "mismatched": mismatched,
            "counter_behind": counter_behind,
        }
        report["ok"] = not gaps and not duplicates and not counter_behind and counter is not None
        logger.info(
            "Sequence audit: %d rows, %d gaps, %d duplicates",
            len(rows), len(gaps), len(duplicates),
        )
        return report
