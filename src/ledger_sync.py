"""
One end-to-end reconcile pass: fetch -> filter -> dedupe -> aggregate -> merge.

Each pass opens its own store through the factory it is given and keeps no
state between calls. Two passes running at once may interleave their
writes; nothing here locks a month.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from ledger_client import LedgerClient, filter_from_month
from ledger_records import aggregate, dedupe
from month_parser import is_on_or_after, parse_cutoff
from protection import AdminCredentials, ProtectionGate
from reconciler import Reconciler, ReconcileResult
from reimbursement_store import (
    ReimbursementStore,
    dynamodb_store_factory,
    load_employees,
    load_reimbursements,
)
from sync_config import SyncConfig
from sync_errors import ConfigurationError, LedgerError

logger = logging.getLogger(__name__)

StoreFactory = Callable[[], ReimbursementStore]


@dataclass
class SyncRequest:
    app_token: str | None = None
    table_id: str | None = None
    access_token: str | None = None
    credentials: AdminCredentials | None = None
    cutoff_month: str | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any] | None) -> "SyncRequest":
        body = body or {}
        return cls(
            app_token=body.get("appToken") or None,
            table_id=body.get("tableId") or None,
            access_token=body.get("accessToken") or None,
            credentials=AdminCredentials.from_body(body),
            cutoff_month=body.get("cutoffMonth") or None,
        )


@dataclass
class SyncOutcome:
    result: ReconcileResult
    fetched: int
    matched: int
    cutoff: str

    @property
    def message(self) -> str:
        r = self.result
        if not (r.inserted or r.updated or r.deleted):
            message = f"All records are up to date (from {self.cutoff})"
        else:
            message = (
                f"Sync complete: {r.inserted} inserted, {r.updated} updated, "
                f"{r.deleted} deleted (from {self.cutoff})"
            )
        if r.skipped:
            message += f"; {r.skipped} protected change(s) skipped"
        if r.failures:
            message += f"; {len(r.failures)} step(s) failed"
        return message

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "fetched": self.fetched,
            "matched": self.matched,
            **self.result.as_dict(),
        }


def build_client(config: SyncConfig) -> LedgerClient:
    return LedgerClient(
        base_url=config.base_url,
        page_size=config.page_size,
        max_records=config.max_records,
        max_pages=config.max_pages,
        timeout=config.request_timeout,
    )


def build_gate(config: SyncConfig) -> ProtectionGate:
    return ProtectionGate(
        config.protected_months, config.admin_username, config.admin_password
    )


def resolve_access_token(
    request: SyncRequest, config: SyncConfig, client: LedgerClient
) -> str | None:
    if request.access_token:
        return request.access_token
    if not (config.app_id and config.app_secret):
        return None
    try:
        return client.fetch_tenant_token(config.app_id, config.app_secret).token
    except LedgerError as e:
        logger.warning(f"Could not acquire tenant access token: {e}")
        return None


def run_sync(
    request: SyncRequest,
    config: SyncConfig,
    client: LedgerClient | None = None,
    store_factory: StoreFactory | None = None,
) -> SyncOutcome:
    """Run one reconcile pass.

    Raises:
        ConfigurationError: ledger app token, table id or access token missing.
        PermissionDenied / TransportError: the ledger rejected a request.
        AuthorizationRequired: protected months would change and no admin
            credentials were supplied. Nothing is written in that case.
    """
    client = client or build_client(config)
    store_factory = store_factory or dynamodb_store_factory(config.table_names)

    app_token = request.app_token or config.app_token
    table_id = request.table_id or config.table_id
    access_token = resolve_access_token(request, config, client)
    missing = [
        name
        for name, value in (
            ("appToken", app_token),
            ("tableId", table_id),
            ("accessToken", access_token),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(
            f"Missing required parameters: {', '.join(missing)}. Set FEISHU_APP_TOKEN, "
            "FEISHU_TABLE_ID, FEISHU_APP_ID and FEISHU_APP_SECRET"
        )

    try:
        cutoff = parse_cutoff(request.cutoff_month or config.cutoff_month)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    items = client.fetch_all(str(app_token), str(table_id), str(access_token))
    matched = filter_from_month(items, cutoff, config.month_fields)
    unique = dedupe(matched, config.name_aliases)
    if len(unique) != len(matched):
        logger.info(
            "Removed duplicate ledger rows",
            extra={"duplicates": len(matched) - len(unique)},
        )
    entries = aggregate(unique, config.name_aliases, config.month_fields)

    store = store_factory()
    existing = [
        row
        for row in load_reimbursements(store, config.retry_policy)
        if is_on_or_after(row.get("month"), cutoff)
    ]
    employees = load_employees(store, config.retry_policy)

    reconciler = Reconciler(store, build_gate(config), cutoff)
    result = reconciler.reconcile(
        entries,
        existing,
        employees,
        credentials=request.credentials,
        require_authorization=request.credentials is None,
    )

    outcome = SyncOutcome(
        result=result, fetched=len(items), matched=len(matched), cutoff=str(cutoff)
    )
    logger.info(
        outcome.message,
        extra={"fetched": outcome.fetched, "matched": outcome.matched, **result.as_dict()},
    )
    return outcome
