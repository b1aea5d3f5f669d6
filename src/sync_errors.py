"""Exceptions raised by the ledger sync pass."""

from typing import Any


class SyncError(Exception):
    """Base exception for sync failures."""

    pass


class ConfigurationError(SyncError):
    """Raised when ledger credentials are missing and no fetch can start."""

    pass


class LedgerError(SyncError):
    """Base exception for faults reported by the external ledger."""

    pass


class PermissionDenied(LedgerError):
    """Raised when the ledger app lacks the scopes needed for the call."""

    def __init__(
        self,
        message: str = "Ledger application is missing required permissions",
        permissions: list[str] | None = None,
        auth_url: str | None = None,
        details: str | None = None,
    ):
        super().__init__(message)
        self.permissions: list[str] = permissions or []
        self.auth_url = auth_url
        self.details = details


class TransportError(LedgerError):
    """Raised for any other non-success response from the ledger."""

    def __init__(self, status: int | None, payload: Any):
        super().__init__(f"Ledger request failed ({status}): {payload}")
        self.status = status
        self.payload = payload


class AuthorizationRequired(SyncError):
    """Raised when a mutation touches a protected month without admin credentials."""

    def __init__(self, months: list[str] | None = None):
        self.months: list[str] = sorted(set(months or []))
        super().__init__(
            "Admin credentials required to modify protected months: "
            + ", ".join(self.months)
        )
