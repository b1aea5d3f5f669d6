"""
Write protection for closed historical months.

Reimbursements for March through November 2025 have been paid out and
reported; their persisted totals may only change with admin credentials.
Reads are never gated.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Iterable

from month_parser import parse_month
from sync_errors import AuthorizationRequired

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdminCredentials:
    username: str
    password: str

    @classmethod
    def from_body(cls, body: dict) -> "AdminCredentials | None":
        username = body.get("adminUsername")
        password = body.get("adminPassword")
        if not username and not password:
            return None
        return cls(str(username or ""), str(password or ""))


class ProtectionGate:
    def __init__(
        self, protected_months: Iterable[str], admin_username: str, admin_password: str
    ):
        self._protected = frozenset(protected_months)
        self._admin_username = admin_username
        self._admin_password = admin_password

    def is_protected(self, month_key: str) -> bool:
        return month_key in self._protected

    def authorize(self, username: str | None, password: str | None) -> bool:
        """True only when both values equal the configured admin pair."""
        if not username or not password:
            return False
        if not self._admin_username or not self._admin_password:
            return False
        username_ok = hmac.compare_digest(
            username.encode("utf-8"), self._admin_username.encode("utf-8")
        )
        password_ok = hmac.compare_digest(
            password.encode("utf-8"), self._admin_password.encode("utf-8")
        )
        return username_ok and password_ok

    def is_authorized(self, credentials: AdminCredentials | None) -> bool:
        if credentials is None:
            return False
        return self.authorize(credentials.username, credentials.password)

    def may_modify(self, month_key: str, credentials: AdminCredentials | None) -> bool:
        return not self.is_protected(month_key) or self.is_authorized(credentials)

    def require(self, month_key: str, credentials: AdminCredentials | None) -> None:
        """Raise AuthorizationRequired unless month_key may be modified."""
        if not self.may_modify(month_key, credentials):
            logger.warning(
                "Rejected change to protected month", extra={"month": month_key}
            )
            raise AuthorizationRequired([month_key])

    def protected_months_message(self) -> str:
        months = sorted(self._protected, key=_month_order)
        if not months:
            return "No months are protected"
        return (
            f"Historical data from {months[0]} to {months[-1]} is protected; "
            "admin credentials are required to modify it"
        )


def _month_order(month_key: str) -> tuple[int, int]:
    parsed = parse_month(month_key)
    return (parsed.year, parsed.month) if parsed else (0, 0)
