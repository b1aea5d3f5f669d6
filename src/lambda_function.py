"""
AWS Lambda handlers for the reimbursement ledger sync.

This module contains the API Gateway handlers for:
- Ledger reconciliation (POST /sync)
- Tenant token exchange (POST /token)
- Itemized ledger rows for one employee and month (POST /amount-details)
- Manual reimbursement adds, edits and deletes, gated by month protection

The handlers can be invoked both via AWS Lambda and locally for development.
Every failure is returned as a structured body; callers check `success` or
`error` rather than relying on the status code alone.
"""

import base64
import json
import logging
import os
import re
from decimal import Decimal
from typing import Any

from botocore.exceptions import ClientError
from dotenv import load_dotenv

from decimal_utils import ZERO, FinancialJsonEncoder, to_currency, to_decimal
from ledger_client import filter_from_month
from ledger_records import details_for
from ledger_sync import (
    SyncRequest,
    build_client,
    build_gate,
    resolve_access_token,
    run_sync,
)
from logging_utils import setup_json_logger
from month_parser import month_key, parse_month
from protection import AdminCredentials
from reimbursement_store import (
    EMPLOYEES,
    REIMBURSEMENTS,
    dynamodb_store_factory,
    refresh_monthly_summary,
)
from sync_config import load_config
from sync_errors import (
    AuthorizationRequired,
    ConfigurationError,
    LedgerError,
    PermissionDenied,
    TransportError,
)

load_dotenv()

if "AWS_LAMBDA_FUNCTION_NAME" not in os.environ:
    setup_json_logger()
logger = logging.getLogger(__name__)

AMOUNT_NOISE = re.compile(r"[¥元,\s]")
BANK_INFO_PLACEHOLDER = "待补充"


def create_response(
    status_code: int,
    body: object,
    request_id: str | None = None,
) -> dict:
    """Create a standardized API response with request ID tracking"""
    headers = {
        "Content-type": "application/json",
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Headers": (
            "Content-Type,X-Amz-Date,Authorization,X-Api-Key,X-Amz-Security-Token"
        ),
        "Access-Control-Allow-Methods": "POST,OPTIONS",
    }
    if request_id is not None:
        headers["X-Request-ID"] = request_id

    return {
        "statusCode": status_code,
        "body": json.dumps(body, cls=FinancialJsonEncoder, ensure_ascii=False),
        "headers": headers,
    }


def _parse_body(event: Any) -> dict[str, Any]:
    """Request body from an API Gateway proxy event or a direct invocation."""
    if not isinstance(event, dict):
        return {}
    if "body" not in event:
        return event
    raw = event.get("body")
    if not raw:
        return {}
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    parsed = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(parsed, dict):
        raise ValueError("Request body must be a JSON object")
    return parsed


def _request_id(context: Any) -> str:
    return getattr(context, "aws_request_id", None) or "local"


def sync_handler(event: Any = None, context: Any = None) -> dict:
    """
    Reconcile the reimbursement table with the external ledger.

    API Gateway invocation:
        POST /sync
        Body (all optional): appToken, tableId, accessToken,
                             adminUsername, adminPassword, cutoffMonth

    Local development:
        >>> from lambda_function import sync_handler
        >>> sync_handler({"cutoffMonth": "2025-12"})
    """
    request_id = _request_id(context)
    try:
        request = SyncRequest.from_body(_parse_body(event))
    except ValueError as e:
        return create_response(400, {"success": False, "error": str(e)}, request_id)

    logger.info(
        "Processing sync request",
        extra={"request_id": request_id, "cutoff": request.cutoff_month},
    )
    config = load_config()

    try:
        outcome = run_sync(request, config)
    except ConfigurationError as e:
        return create_response(400, {"success": False, "error": str(e)}, request_id)
    except PermissionDenied as e:
        logger.error(
            "Ledger permission denied",
            extra={"permissions": e.permissions, "auth_url": e.auth_url},
        )
        return create_response(
            403,
            {
                "success": False,
                "error": str(e),
                "errorType": "permission_denied",
                "permissions": e.permissions,
                "authUrl": e.auth_url,
                "details": e.details,
            },
            request_id,
        )
    except AuthorizationRequired as e:
        gate = build_gate(config)
        return create_response(
            200,
            {
                "success": False,
                "requiresAuth": True,
                "error": gate.protected_months_message(),
                "months": e.months,
            },
            request_id,
        )
    except TransportError as e:
        logger.error("Ledger request failed", extra={"status": e.status})
        return create_response(
            502,
            {"success": False, "error": str(e), "status": e.status},
            request_id,
        )
    except Exception as e:
        logger.exception("Exception in sync_handler")
        return create_response(
            500, {"success": False, "error": str(e) or "Sync failed"}, request_id
        )

    return create_response(200, outcome.as_dict(), request_id)


def token_handler(event: Any = None, context: Any = None) -> dict:
    """
    Exchange ledger app credentials for a tenant access token.

    API Gateway invocation:
        POST /token
        Body: appId, appSecret
    """
    request_id = _request_id(context)
    try:
        body = _parse_body(event)
    except ValueError as e:
        return create_response(400, {"error": str(e)}, request_id)

    app_id, app_secret = body.get("appId"), body.get("appSecret")
    if not app_id or not app_secret:
        return create_response(400, {"error": "Missing App ID or App Secret"}, request_id)

    config = load_config()
    try:
        token = build_client(config).fetch_tenant_token(app_id, app_secret)
    except LedgerError as e:
        logger.warning(f"Token exchange failed: {e}")
        return create_response(400, {"error": str(e)}, request_id)

    return create_response(
        200, {"accessToken": token.token, "expireTime": token.expire}, request_id
    )


def amount_details_handler(event: Any = None, context: Any = None) -> dict:
    """
    Itemized ledger rows behind one employee's monthly total.

    API Gateway invocation:
        POST /amount-details
        Body: employeeName, month (e.g. "2025年12月")
    """
    request_id = _request_id(context)
    try:
        body = _parse_body(event)
    except ValueError as e:
        return create_response(200, {"success": False, "error": str(e)}, request_id)

    employee_name, month = body.get("employeeName"), body.get("month")
    if not employee_name or not month:
        return create_response(
            200,
            {"success": False, "error": "Missing employeeName or month"},
            request_id,
        )

    config = load_config()
    target = parse_month(month)
    if target is None:
        return create_response(
            200, {"success": False, "error": "Invalid month format"}, request_id
        )

    client = build_client(config)
    try:
        access_token = resolve_access_token(SyncRequest(), config, client)
        if not (config.app_token and config.table_id and access_token):
            raise ConfigurationError("Ledger credentials are not configured")
        items = client.fetch_all(config.app_token, config.table_id, access_token)
        items = filter_from_month(items, target, config.month_fields)
        details, total = details_for(
            items, employee_name, month, config.name_aliases, config.month_fields
        )
    except (ConfigurationError, LedgerError) as e:
        logger.error(f"Failed to fetch amount details: {e}")
        return create_response(200, {"success": False, "error": str(e)}, request_id)

    return create_response(
        200,
        {
            "success": True,
            "details": [
                {
                    "date": d.date,
                    "category": d.category,
                    "amount": d.amount,
                    "note": d.note,
                }
                for d in details
            ],
            "totalAmount": total,
            "recordCount": len(details),
        },
        request_id,
    )


def _parse_amount(value: Any) -> Decimal | None:
    amount = to_decimal(AMOUNT_NOISE.sub("", str(value)))
    return to_currency(amount) if amount > ZERO else None


def _month(value: Any) -> str:
    """Canonical month key for a request value; unrecognized text is kept as-is."""
    if not value:
        return ""
    return month_key(str(value)) or str(value)


def _find_records(store: Any, body: dict[str, Any]) -> list[dict[str, Any]]:
    if body.get("id"):
        return store.select(REIMBURSEMENTS, {"id": body["id"]})
    name = body.get("old_employee_name") or body.get("employee_name")
    month = _month(body.get("month"))
    if name and month:
        return store.select(REIMBURSEMENTS, {"employee_name": name, "month": month})
    return []


def _employee_bank_info(store: Any, name: str) -> dict[str, str]:
    """Bank details for name, registering the employee with placeholders if unknown."""
    employees = store.select(EMPLOYEES, {"name": name})
    if employees:
        employee = employees[0]
    else:
        logger.info("Employee not found, creating", extra={"employee": name})
        employee = store.insert(
            EMPLOYEES,
            [
                {
                    "name": name,
                    "account_number": BANK_INFO_PLACEHOLDER,
                    "bank_branch": BANK_INFO_PLACEHOLDER,
                }
            ],
        )[0]
    return {
        "account_number": str(employee.get("account_number") or ""),
        "bank_branch": str(employee.get("bank_branch") or ""),
    }


def add_reimbursement_handler(event: Any = None, context: Any = None) -> dict:
    """
    Manually add a reimbursement record.

    API Gateway invocation:
        POST /add-reimbursement
        Body: employee_name, amount, month, note (optional);
              adminUsername/adminPassword for protected months
    """
    request_id = _request_id(context)
    try:
        body = _parse_body(event)
    except ValueError as e:
        return create_response(200, {"success": False, "error": str(e)}, request_id)

    employee_name = str(body.get("employee_name") or "").strip()
    month = _month(body.get("month"))
    if not employee_name or not body.get("amount") or not month:
        return create_response(
            200,
            {"success": False, "error": "Missing employee_name, amount or month"},
            request_id,
        )
    amount = _parse_amount(body["amount"])
    if amount is None:
        return create_response(
            200,
            {"success": False, "error": "Amount must be a number greater than 0"},
            request_id,
        )

    config = load_config()
    store = dynamodb_store_factory(config.table_names)()

    try:
        build_gate(config).require(month, AdminCredentials.from_body(body))
        bank_info = _employee_bank_info(store, employee_name)
        record = store.insert(
            REIMBURSEMENTS,
            [
                {
                    "employee_name": employee_name,
                    "amount": amount,
                    "month": month,
                    "note": body.get("note") or "",
                    **bank_info,
                }
            ],
        )[0]
        refresh_monthly_summary(store, month)
    except AuthorizationRequired as e:
        return create_response(
            200,
            {"success": False, "requiresAuth": True, "error": str(e)},
            request_id,
        )
    except ClientError as e:
        logger.exception("Failed to add reimbursement")
        return create_response(
            200, {"success": False, "error": f"Add failed: {e}"}, request_id
        )

    return create_response(
        200,
        {
            "success": True,
            "data": record,
            "message": f"Added reimbursement for {employee_name} in {month}: ¥{amount}",
        },
        request_id,
    )


def update_reimbursement_handler(event: Any = None, context: Any = None) -> dict:
    """
    Manually edit one reimbursement record.

    API Gateway invocation:
        POST /update-reimbursement
        Body: id or (old_employee_name + month); any of new_employee_name,
              amount, note; adminUsername/adminPassword for protected months
    """
    request_id = _request_id(context)
    try:
        body = _parse_body(event)
    except ValueError as e:
        return create_response(200, {"success": False, "error": str(e)}, request_id)

    config = load_config()
    store = dynamodb_store_factory(config.table_names)()

    try:
        records = _find_records(store, body)
        if not records:
            return create_response(
                200,
                {"success": False, "error": "Reimbursement record not found"},
                request_id,
            )
        record = records[0]
        month = record.get("month", "")
        build_gate(config).require(month, AdminCredentials.from_body(body))

        patch: dict[str, Any] = {}
        new_name = body.get("new_employee_name")
        if new_name:
            patch["employee_name"] = new_name
        if body.get("amount") is not None:
            amount = _parse_amount(body["amount"])
            if amount is None:
                return create_response(
                    200,
                    {"success": False, "error": "Amount must be a number greater than 0"},
                    request_id,
                )
            patch["amount"] = amount
        if body.get("note") is not None:
            patch["note"] = body["note"]

        store.update(REIMBURSEMENTS, record["id"], patch)
        if "amount" in patch:
            refresh_monthly_summary(store, month)
    except AuthorizationRequired as e:
        return create_response(
            200,
            {"success": False, "requiresAuth": True, "error": str(e)},
            request_id,
        )
    except ClientError as e:
        logger.exception("Failed to update reimbursement")
        return create_response(
            200, {"success": False, "error": f"Update failed: {e}"}, request_id
        )

    message = "Reimbursement record updated"
    if new_name:
        message += f"; employee renamed to {new_name}"
    return create_response(
        200, {"success": True, "message": message, "needsRefresh": True}, request_id
    )


def delete_reimbursement_handler(event: Any = None, context: Any = None) -> dict:
    """
    Manually delete an employee's reimbursement for one month.

    API Gateway invocation:
        POST /delete-reimbursement
        Body: employee_name, month; adminUsername/adminPassword for protected months
    """
    request_id = _request_id(context)
    try:
        body = _parse_body(event)
    except ValueError as e:
        return create_response(200, {"success": False, "error": str(e)}, request_id)

    employee_name = body.get("employee_name")
    month = _month(body.get("month"))
    if not employee_name or not month:
        return create_response(
            200,
            {"success": False, "error": "Missing employee_name or month"},
            request_id,
        )

    config = load_config()
    store = dynamodb_store_factory(config.table_names)()

    try:
        build_gate(config).require(month, AdminCredentials.from_body(body))
        deleted = store.delete(
            REIMBURSEMENTS, {"employee_name": employee_name, "month": month}
        )
        if not deleted:
            return create_response(
                200,
                {
                    "success": False,
                    "error": f"No reimbursement for {employee_name} in {month}",
                },
                request_id,
            )
        refresh_monthly_summary(store, month)
    except AuthorizationRequired as e:
        return create_response(
            200,
            {"success": False, "requiresAuth": True, "error": str(e)},
            request_id,
        )
    except ClientError as e:
        logger.exception("Failed to delete reimbursement")
        return create_response(
            200, {"success": False, "error": f"Delete failed: {e}"}, request_id
        )

    return create_response(
        200,
        {
            "success": True,
            "message": f"Deleted {deleted} reimbursement record(s)",
            "deleted_count": deleted,
        },
        request_id,
    )
