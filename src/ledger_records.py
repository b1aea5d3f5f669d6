"""
Turn raw ledger rows into per-employee monthly totals.

Column names are the ledger's own (Chinese) headers. Employee names in the
ledger are entered freehand, so known alternate spellings are mapped to the
canonical name used in the reimbursement table before any grouping.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping

from decimal_utils import ZERO
from field_extractor import extract_number, extract_value
from ledger_client import record_month
from month_parser import parse_month

logger = logging.getLogger(__name__)

EMPLOYEE_FIELD = "支出人"
AMOUNT_FIELD = "金额"
CATEGORY_FIELD = "分类"
NOTE_FIELD = "支出说明"
DATE_FIELD = "日期"


@dataclass
class NormalizedDetail:
    employee_name: str
    date: str
    category: str
    amount: Decimal
    note: str
    month_key: str

    def as_row(self) -> dict[str, Any]:
        """Row for the reimbursement_details table."""
        return {
            "employee_name": self.employee_name,
            "month": self.month_key,
            "date": self.date,
            "category": self.category,
            "amount": self.amount,
            "note": self.note,
        }


@dataclass
class AggregateEntry:
    employee_name: str
    month_key: str
    total_amount: Decimal = ZERO
    details: list[NormalizedDetail] = field(default_factory=list)

    @property
    def key(self) -> str:
        return composite_key(self.employee_name, self.month_key)

    def add(self, detail: NormalizedDetail) -> None:
        self.details.append(detail)
        self.total_amount += detail.amount


def composite_key(employee_name: str, month_key: str) -> str:
    return f"{employee_name}_{month_key}"


def canonical_name(name: str, aliases: Mapping[str, str]) -> str:
    return aliases.get(name, name)


def _fields(item: Mapping[str, Any]) -> Mapping[str, Any]:
    return item.get("fields") or {}


def _employee(fields: Mapping[str, Any], aliases: Mapping[str, str]) -> str:
    """Canonical employee name of a row; dedupe and grouping both key on it."""
    return canonical_name(extract_value(fields.get(EMPLOYEE_FIELD)).strip(), aliases)


def dedupe_key(item: Mapping[str, Any], aliases: Mapping[str, str]) -> tuple:
    fields = _fields(item)
    return (
        _employee(fields, aliases),
        extract_value(fields.get(DATE_FIELD)),
        extract_number(fields.get(AMOUNT_FIELD)),
        extract_value(fields.get(CATEGORY_FIELD)),
        extract_value(fields.get(NOTE_FIELD)),
    )


def dedupe(
    items: Iterable[dict[str, Any]], aliases: Mapping[str, str]
) -> list[dict[str, Any]]:
    """Collapse rows entered more than once upstream. First occurrence wins."""
    seen: set[tuple] = set()
    unique = []
    for item in items:
        key = dedupe_key(item, aliases)
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def normalize(
    item: Mapping[str, Any],
    aliases: Mapping[str, str],
    month_fields: Iterable[str],
) -> NormalizedDetail | None:
    """Normalize one row, or None when it has no employee or no parseable month."""
    fields = _fields(item)
    employee = _employee(fields, aliases)
    month = parse_month(record_month(item, month_fields))
    if not employee or month is None:
        return None
    return NormalizedDetail(
        employee_name=employee,
        date=extract_value(fields.get(DATE_FIELD)),
        category=extract_value(fields.get(CATEGORY_FIELD)),
        amount=extract_number(fields.get(AMOUNT_FIELD)),
        note=extract_value(fields.get(NOTE_FIELD)),
        month_key=month.key,
    )


def aggregate(
    items: Iterable[Mapping[str, Any]],
    aliases: Mapping[str, str],
    month_fields: Iterable[str],
) -> list[AggregateEntry]:
    """Group rows by employee and month, summing amounts and keeping details."""
    month_fields = list(month_fields)
    groups: dict[str, AggregateEntry] = {}
    dropped = 0

    for item in items:
        detail = normalize(item, aliases, month_fields)
        if detail is None:
            dropped += 1
            continue
        key = composite_key(detail.employee_name, detail.month_key)
        if key not in groups:
            groups[key] = AggregateEntry(detail.employee_name, detail.month_key)
        groups[key].add(detail)

    if dropped:
        logger.warning(
            "Dropped ledger rows without employee or parseable month",
            extra={"dropped": dropped},
        )
    logger.info(
        "Aggregated ledger rows",
        extra={
            "groups": len(groups),
            "totals": {key: entry.total_amount for key, entry in groups.items()},
        },
    )
    return list(groups.values())


def _date_sort_key(detail: NormalizedDetail) -> tuple:
    # Bitable dates are millisecond timestamps; fall back to text order otherwise
    try:
        return (0, float(detail.date), "")
    except ValueError:
        return (1, 0.0, detail.date)


def details_for(
    items: Iterable[Mapping[str, Any]],
    employee_name: str,
    month_text: str,
    aliases: Mapping[str, str],
    month_fields: Iterable[str],
) -> tuple[list[NormalizedDetail], Decimal]:
    """Itemized rows for one employee and month, oldest first, with their total.

    employee_name may be the canonical name or its ledger spelling.
    Raises ValueError when month_text is not a recognizable month.
    """
    target = parse_month(month_text)
    if target is None:
        raise ValueError(f"Invalid month: {month_text!r}")

    wanted = canonical_name(employee_name.strip(), aliases).lower()
    month_fields = list(month_fields)
    details = []
    for item in dedupe(items, aliases):
        detail = normalize(item, aliases, month_fields)
        if detail is None or detail.month_key != target.key:
            continue
        if detail.employee_name.lower() != wanted:
            continue
        details.append(detail)

    details.sort(key=_date_sort_key)
    return details, sum((d.amount for d in details), ZERO)
