"""
Three-way merge of ledger totals into the reimbursement table.

plan() is pure: it compares aggregated ledger totals with the persisted
rows and decides what to insert, update and delete. apply() commits the
plan step by step. Inserts, updates and deletes are committed independently;
a failed step is logged and reported, and everything already written stays
written.

Any update or delete that lands on a protected month needs admin
credentials. Without them the change is skipped and counted, and the
month's detail rows are left alone.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping

from decimal_utils import ZERO, amounts_differ, to_decimal
from ledger_records import AggregateEntry, NormalizedDetail, composite_key
from month_parser import YearMonth, is_on_or_after
from protection import AdminCredentials, ProtectionGate
from reimbursement_store import (
    REIMBURSEMENT_DETAILS,
    REIMBURSEMENTS,
    ReimbursementStore,
    refresh_monthly_summary,
)
from sync_errors import AuthorizationRequired

logger = logging.getLogger(__name__)


@dataclass
class PendingUpdate:
    record_id: str
    employee_name: str
    month: str
    old_amount: Decimal
    new_amount: Decimal
    bank_info: dict[str, str] = field(default_factory=dict)


@dataclass
class PendingDelete:
    record_id: str
    employee_name: str
    month: str
    amount: Decimal


@dataclass
class ReconcilePlan:
    inserts: list[dict[str, Any]] = field(default_factory=list)
    updates: list[PendingUpdate] = field(default_factory=list)
    deletes: list[PendingDelete] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    blocked_months: set[str] = field(default_factory=set)
    frozen_months: set[str] = field(default_factory=set)
    unchanged: int = 0
    details_by_month: dict[str, list[NormalizedDetail]] = field(default_factory=dict)

    @property
    def detail_months(self) -> list[str]:
        """Months whose detail rows this pass replaces."""
        return [m for m in self.details_by_month if m not in self.frozen_months]


@dataclass
class ReconcileResult:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    unchanged: int = 0
    failures: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "unchanged": self.unchanged,
            "failed": len(self.failures),
        }


def _bank_info(employee: Mapping[str, Any] | None) -> dict[str, str]:
    if not employee:
        return {"account_number": "", "bank_branch": ""}
    return {
        "account_number": str(employee.get("account_number") or ""),
        "bank_branch": str(employee.get("bank_branch") or ""),
    }


def needs_update(stored: Decimal, incoming: Decimal) -> bool:
    """A zero stored amount is treated as a placeholder and always refreshed."""
    stored = to_decimal(stored)
    if stored == ZERO and incoming != ZERO:
        return True
    return amounts_differ(stored, incoming)


class Reconciler:
    def __init__(
        self, store: ReimbursementStore, gate: ProtectionGate, cutoff: YearMonth
    ):
        self._store = store
        self._gate = gate
        self._cutoff = cutoff

    def plan(
        self,
        entries: Iterable[AggregateEntry],
        existing: Iterable[Mapping[str, Any]],
        employees: Mapping[str, Mapping[str, Any]],
        credentials: AdminCredentials | None = None,
    ) -> ReconcilePlan:
        plan = ReconcilePlan()
        authorized = self._gate.is_authorized(credentials)

        existing_by_key = {
            composite_key(row["employee_name"], row["month"]): row
            for row in existing
            if row.get("employee_name") and row.get("month")
        }

        entry_keys = set()
        for entry in entries:
            entry_keys.add(entry.key)
            plan.details_by_month.setdefault(entry.month_key, []).extend(entry.details)
            bank_info = _bank_info(employees.get(entry.employee_name))
            if entry.employee_name not in employees:
                logger.warning(
                    "No bank details for employee",
                    extra={"employee": entry.employee_name},
                )

            current = existing_by_key.get(entry.key)
            if current is None:
                plan.inserts.append(
                    {
                        "employee_name": entry.employee_name,
                        "amount": entry.total_amount,
                        "note": "",
                        "month": entry.month_key,
                        **bank_info,
                    }
                )
                continue

            if not needs_update(current.get("amount"), entry.total_amount):
                plan.unchanged += 1
                continue

            if self._gate.is_protected(entry.month_key) and not authorized:
                plan.blocked.append(entry.key)
                plan.blocked_months.add(entry.month_key)
                continue

            plan.updates.append(
                PendingUpdate(
                    record_id=current["id"],
                    employee_name=entry.employee_name,
                    month=entry.month_key,
                    old_amount=to_decimal(current.get("amount")),
                    new_amount=entry.total_amount,
                    bank_info=bank_info if entry.employee_name in employees else {},
                )
            )

        for key, row in existing_by_key.items():
            if key in entry_keys or not is_on_or_after(row["month"], self._cutoff):
                continue
            if self._gate.is_protected(row["month"]) and not authorized:
                plan.blocked.append(key)
                plan.blocked_months.add(row["month"])
                continue
            plan.deletes.append(
                PendingDelete(
                    record_id=row["id"],
                    employee_name=row["employee_name"],
                    month=row["month"],
                    amount=to_decimal(row.get("amount")),
                )
            )
            plan.details_by_month.setdefault(row["month"], [])

        # Protected months without credentials keep their details untouched
        if not authorized:
            plan.frozen_months.update(
                m for m in plan.details_by_month if self._gate.is_protected(m)
            )

        logger.info(
            "Reconcile plan",
            extra={
                "inserts": len(plan.inserts),
                "updates": len(plan.updates),
                "deletes": len(plan.deletes),
                "blocked": plan.blocked,
                "unchanged": plan.unchanged,
            },
        )
        return plan

    def apply(self, plan: ReconcilePlan) -> ReconcileResult:
        result = ReconcileResult(skipped=len(plan.blocked), unchanged=plan.unchanged)
        changed_months: set[str] = set()

        if plan.inserts:
            try:
                stored = self._store.insert(REIMBURSEMENTS, plan.inserts)
                result.inserted = len(stored)
                changed_months.update(row["month"] for row in plan.inserts)
            except Exception as e:
                logger.exception("Failed to insert reimbursements")
                result.failures.append(f"insert: {e}")

        for update in plan.updates:
            try:
                self._store.update(
                    REIMBURSEMENTS,
                    update.record_id,
                    {"amount": update.new_amount, **update.bank_info},
                )
                result.updated += 1
                changed_months.add(update.month)
                logger.info(
                    "Updated reimbursement",
                    extra={
                        "employee": update.employee_name,
                        "month": update.month,
                        "old_amount": update.old_amount,
                        "new_amount": update.new_amount,
                    },
                )
            except Exception as e:
                logger.exception(
                    "Failed to update reimbursement",
                    extra={"employee": update.employee_name, "month": update.month},
                )
                result.failures.append(
                    f"update {update.employee_name} {update.month}: {e}"
                )

        for delete in plan.deletes:
            try:
                self._store.delete(REIMBURSEMENTS, {"id": delete.record_id})
                result.deleted += 1
                changed_months.add(delete.month)
                logger.info(
                    "Deleted reimbursement missing from ledger",
                    extra={"employee": delete.employee_name, "month": delete.month},
                )
            except Exception as e:
                logger.exception(
                    "Failed to delete reimbursement",
                    extra={"employee": delete.employee_name, "month": delete.month},
                )
                result.failures.append(
                    f"delete {delete.employee_name} {delete.month}: {e}"
                )

        for month in plan.detail_months:
            try:
                self._replace_details(month, plan.details_by_month[month])
            except Exception as e:
                logger.exception(
                    "Failed to replace reimbursement details", extra={"month": month}
                )
                result.failures.append(f"details {month}: {e}")

        for month in sorted(changed_months):
            try:
                refresh_monthly_summary(self._store, month)
            except Exception as e:
                logger.exception(
                    "Failed to update monthly summary", extra={"month": month}
                )
                result.failures.append(f"summary {month}: {e}")

        if result.failures:
            logger.error(
                "Reconcile pass committed partially",
                extra={**result.as_dict(), "failures": result.failures},
            )
        return result

    def _replace_details(self, month: str, details: list[NormalizedDetail]) -> None:
        removed = self._store.delete(REIMBURSEMENT_DETAILS, {"month": month})
        if details:
            self._store.insert(REIMBURSEMENT_DETAILS, [d.as_row() for d in details])
        logger.info(
            "Replaced reimbursement details",
            extra={"month": month, "removed": removed, "inserted": len(details)},
        )

    def reconcile(
        self,
        entries: Iterable[AggregateEntry],
        existing: Iterable[Mapping[str, Any]],
        employees: Mapping[str, Mapping[str, Any]],
        credentials: AdminCredentials | None = None,
        require_authorization: bool = False,
    ) -> ReconcileResult:
        """Plan and apply one reconcile pass.

        With require_authorization, blocked protected changes abort the pass
        before anything is written so the caller can ask for credentials.
        """
        plan = self.plan(entries, existing, employees, credentials)
        if require_authorization and plan.blocked:
            raise AuthorizationRequired(sorted(plan.blocked_months))
        return self.apply(plan)
