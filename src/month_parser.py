"""
Month parsing for ledger rows and persisted reimbursement keys.

Ledger month columns are free text. Accepted spellings, tried in order:

    2025-12      2025年12月      2025/12

The first pattern found anywhere in the text wins, so "2025-12-03" and
"报销 2025年12月" both resolve. Persisted rows use the canonical
"{year}年{month}月" key.
"""

import re
from typing import NamedTuple

MONTH_PATTERNS = (
    re.compile(r"(\d{4})-(\d{1,2})"),
    re.compile(r"(\d{4})年(\d{1,2})月"),
    re.compile(r"(\d{4})/(\d{1,2})"),
)


class YearMonth(NamedTuple):
    year: int
    month: int

    @property
    def key(self) -> str:
        """Canonical persisted month key, e.g. 2025年12月."""
        return f"{self.year}年{self.month}月"

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def parse_month(text: str | None) -> YearMonth | None:
    """Extract (year, month) from free text, or None when nothing matches."""
    if not text:
        return None
    for pattern in MONTH_PATTERNS:
        match = pattern.search(text)
        if match:
            year, month = int(match.group(1)), int(match.group(2))
            if year == 0 or not 1 <= month <= 12:
                return None
            return YearMonth(year, month)
    return None


def month_key(text: str | None) -> str | None:
    parsed = parse_month(text)
    return parsed.key if parsed else None


def parse_cutoff(text: str) -> YearMonth:
    """Parse a configured cutoff such as "2025-12"; raises ValueError if invalid."""
    parsed = parse_month(text)
    if parsed is None:
        raise ValueError(f"Invalid cutoff month: {text!r}")
    return parsed


def is_on_or_after(month: YearMonth | str | None, cutoff: YearMonth) -> bool:
    """True when month falls on or after cutoff. Unparseable months are False."""
    if isinstance(month, str) or month is None:
        month = parse_month(month)
    if month is None:
        return False
    return (month.year, month.month) >= (cutoff.year, cutoff.month)
