"""
Configuration for the ledger sync.

Values come from the environment (a local .env is honored through
python-dotenv). When SYNC_CONFIG_PARAMETER names an SSM parameter, its JSON
object overrides the environment; a failed SSM read falls back to the
environment values with a warning.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

import boto3
from dotenv import load_dotenv

from month_parser import YearMonth, parse_cutoff
from reimbursement_store import (
    EMPLOYEES,
    MONTHLY_SUMMARIES,
    REIMBURSEMENT_DETAILS,
    REIMBURSEMENTS,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://open.feishu.cn/open-apis"

DEFAULT_NAME_ALIASES = {
    "Stephen": "蒋坤洪",
    "stephen": "蒋坤洪",
    "lewis": "李宇航",
    "Lewis": "李宇航",
    "Lewis Li": "李宇航",
    "lewis li": "李宇航",
}

DEFAULT_MONTH_FIELDS = ["月份", "month", "Month", "日期月份", "归属月份"]

DEFAULT_PROTECTED_MONTHS = [f"2025年{month}月" for month in range(3, 12)]

# (attribute, environment variable, parser)
ENVIRONMENT_SETTINGS: list[tuple[str, str, Any]] = [
    ("app_token", "FEISHU_APP_TOKEN", str),
    ("table_id", "FEISHU_TABLE_ID", str),
    ("app_id", "FEISHU_APP_ID", str),
    ("app_secret", "FEISHU_APP_SECRET", str),
    ("base_url", "FEISHU_BASE_URL", str),
    ("admin_username", "ADMIN_USERNAME", str),
    ("admin_password", "ADMIN_PASSWORD", str),
    ("cutoff_month", "SYNC_CUTOFF_MONTH", str),
    ("max_records", "SYNC_MAX_RECORDS", int),
    ("max_pages", "SYNC_MAX_PAGES", int),
    ("page_size", "SYNC_PAGE_SIZE", int),
    ("request_timeout", "FEISHU_REQUEST_TIMEOUT", float),
    ("retry_attempts", "STORE_RETRY_ATTEMPTS", int),
    ("retry_backoff", "STORE_RETRY_BACKOFF", float),
]

TABLE_ENVIRONMENT = {
    REIMBURSEMENTS: "REIMBURSEMENTS_TABLE",
    REIMBURSEMENT_DETAILS: "REIMBURSEMENT_DETAILS_TABLE",
    EMPLOYEES: "EMPLOYEES_TABLE",
    MONTHLY_SUMMARIES: "MONTHLY_SUMMARIES_TABLE",
}


@dataclass
class SyncConfig:
    app_token: str = ""
    table_id: str = ""
    app_id: str = ""
    app_secret: str = ""
    base_url: str = DEFAULT_BASE_URL
    admin_username: str = "admin"
    admin_password: str = "admin123"
    cutoff_month: str = "2025-12"
    max_records: int = 2000
    max_pages: int = 200
    page_size: int = 500
    request_timeout: float = 30.0
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    name_aliases: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_NAME_ALIASES)
    )
    month_fields: list[str] = field(default_factory=lambda: list(DEFAULT_MONTH_FIELDS))
    protected_months: list[str] = field(
        default_factory=lambda: list(DEFAULT_PROTECTED_MONTHS)
    )
    table_names: dict[str, str] = field(
        default_factory=lambda: {name: name for name in TABLE_ENVIRONMENT}
    )

    @property
    def cutoff(self) -> YearMonth:
        return parse_cutoff(self.cutoff_month)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts, backoff_seconds=self.retry_backoff
        )

    def apply_overrides(self, overrides: Mapping[str, Any]) -> None:
        """Apply a mapping of attribute names to values, ignoring unknown keys."""
        known = {f.name for f in fields(self)}
        for name, value in overrides.items():
            if name not in known:
                logger.warning(f"Ignoring unknown sync setting {name!r}")
                continue
            if name == "table_names":
                self.table_names.update(value)
            else:
                setattr(self, name, value)


def load_config(
    environ: Mapping[str, str] | None = None, ssm_client: Any | None = None
) -> SyncConfig:
    """Build the configuration for one request."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    config = SyncConfig()
    for attribute, variable, parser in ENVIRONMENT_SETTINGS:
        raw = environ.get(variable)
        if raw in (None, ""):
            continue
        try:
            setattr(config, attribute, parser(raw))
        except ValueError:
            logger.warning(
                f"Ignoring invalid value for {variable}", extra={"value": raw}
            )

    for table, variable in TABLE_ENVIRONMENT.items():
        if environ.get(variable):
            config.table_names[table] = environ[variable]

    parameter = environ.get("SYNC_CONFIG_PARAMETER")
    if parameter:
        try:
            client = ssm_client or boto3.client("ssm")
            value = client.get_parameter(Name=parameter, WithDecryption=True)[
                "Parameter"
            ]["Value"]
            config.apply_overrides(json.loads(value))
        except Exception as e:
            logger.error(f"Failed to load sync configuration: {str(e)}")
            logger.warning("Using environment sync configuration")

    return config
