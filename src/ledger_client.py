"""Feishu Bitable API client for reading the expense ledger.

The ledger is the system of record for individual expense rows. Reads go
through the records/search endpoint, which pages with an opaque page_token.
The endpoint has been seen to hand back the same page_token forever while
reporting has_more=true, so fetch_all() never trusts has_more alone.

API reference:
  POST auth/v3/tenant_access_token/internal       app credentials -> token
  POST bitable/v1/apps/{app}/tables/{table}/records/search
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

import requests

from field_extractor import extract_value
from month_parser import YearMonth, is_on_or_after
from sync_errors import PermissionDenied, TransportError

logger = logging.getLogger(__name__)

PERMISSION_DENIED_CODE = 99991672
DATE_FIELD = "日期"
URL_PATTERN = re.compile(r"https://[^\s\"]+")


@dataclass
class TenantToken:
    token: str
    expire: int


class LedgerClient:
    """Read-only interface to one Bitable deployment."""

    def __init__(
        self,
        base_url: str = "https://open.feishu.cn/open-apis",
        session: requests.Session | None = None,
        page_size: int = 500,
        max_records: int = 2000,
        max_pages: int = 200,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self.page_size = page_size
        self.max_records = max_records
        self.max_pages = max_pages
        self._timeout = timeout

    # ---- Transport ----

    def _post(
        self, path: str, body: dict[str, Any], access_token: str | None = None
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            response = self._session.post(
                f"{self._base_url}/{path}",
                json=body,
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error("Ledger request to %s failed: %s", path, e)
            raise TransportError(None, str(e)) from e

        try:
            payload = response.json()
        except ValueError:
            payload = response.text

        if not response.ok or not isinstance(payload, dict) or payload.get("code"):
            raise self._error_from(response.status_code, payload)
        return payload

    @staticmethod
    def _error_from(status: int, payload: Any) -> Exception:
        if isinstance(payload, dict):
            violations = (payload.get("error") or {}).get("permission_violations")
            if payload.get("code") == PERMISSION_DENIED_CODE or violations:
                msg = str(payload.get("msg", ""))
                match = URL_PATTERN.search(msg)
                return PermissionDenied(
                    permissions=[
                        v.get("subject", "") for v in violations or [] if v
                    ],
                    auth_url=match.group(0) if match else None,
                    details=msg,
                )
        return TransportError(status, payload)

    # ---- Read operations ----

    def fetch_tenant_token(self, app_id: str, app_secret: str) -> TenantToken:
        """Exchange app credentials for a tenant_access_token."""
        data = self._post(
            "auth/v3/tenant_access_token/internal",
            {"app_id": app_id, "app_secret": app_secret},
        )
        logger.info("Fetched tenant access token (expires in %ss)", data.get("expire"))
        return TenantToken(
            token=str(data.get("tenant_access_token", "")),
            expire=int(data.get("expire", 0)),
        )

    def search_page(
        self,
        app_token: str,
        table_id: str,
        access_token: str,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        """Fetch one page of records, newest first. Returns the `data` object."""
        body: dict[str, Any] = {
            "page_size": self.page_size,
            "sort": [{"field_name": DATE_FIELD, "desc": True}],
        }
        if page_token:
            body["page_token"] = page_token

        payload = self._post(
            f"bitable/v1/apps/{app_token}/tables/{table_id}/records/search",
            body,
            access_token=access_token,
        )
        return payload.get("data") or {}

    def fetch_all(
        self, app_token: str, table_id: str, access_token: str
    ) -> list[dict[str, Any]]:
        """Fetch every record page by page, stopping on the first safety guard hit.

        Hitting a guard truncates the result; it is logged, never raised.
        Sorting newest first means truncation drops the oldest rows.
        """
        items: list[dict[str, Any]] = []
        seen_tokens: set[str] = set()
        page_token: str | None = None
        page_count = 0

        while True:
            page_count += 1
            data = self.search_page(app_token, table_id, access_token, page_token)
            page_items = data.get("items") or []
            items.extend(page_items)
            logger.info(
                "Fetched ledger page",
                extra={"page": page_count, "items": len(page_items), "total": len(items)},
            )

            previous_token = page_token
            has_more = bool(data.get("has_more"))
            page_token = data.get("page_token") or None

            if len(items) >= self.max_records:
                logger.warning(
                    "Reached record cap, stopping",
                    extra={"max_records": self.max_records},
                )
                break
            if page_token is not None and page_token in seen_tokens:
                logger.warning("Ledger repeated a page_token, stopping")
                break
            if page_token is not None and page_token == previous_token:
                logger.warning("Ledger returned the same page_token, stopping")
                break
            if not has_more or page_token is None:
                break
            if page_count >= self.max_pages:
                logger.warning(
                    "Reached page cap, stopping", extra={"max_pages": self.max_pages}
                )
                break

            seen_tokens.add(page_token)

        logger.info(f"Fetched {len(items)} ledger records in {page_count} pages")
        return items[: self.max_records]


def record_month(item: dict[str, Any], month_fields: Iterable[str]) -> str:
    """First non-empty month-bearing column of a ledger row."""
    fields = item.get("fields") or {}
    for name in month_fields:
        value = extract_value(fields.get(name))
        if value:
            return value
    return ""


def filter_from_month(
    items: list[dict[str, Any]], cutoff: YearMonth, month_fields: Iterable[str]
) -> list[dict[str, Any]]:
    """Keep rows whose month is on or after cutoff.

    The search endpoint's own filter misses rows whose month column is a
    formula, so the cut is applied here.
    """
    month_fields = list(month_fields)
    kept = [
        item
        for item in items
        if is_on_or_after(record_month(item, month_fields), cutoff)
    ]
    logger.debug(
        "Filtered ledger rows by month",
        extra={"cutoff": str(cutoff), "kept": len(kept), "dropped": len(items) - len(kept)},
    )
    return kept
