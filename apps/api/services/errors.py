"""Error taxonomy for the token ledger and entitlement engine."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException


class EntitlementError(Exception):
    """Base class for engine errors. Routers map `status_code` onto HTTP responses."""

    code = "entitlement_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_detail(self) -> Dict[str, Any]:
        return {"error_code": self.code, "message": self.message}

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_detail())


class InsufficientFunds(EntitlementError):
    """Expected denial. Never retried."""

    code = "insufficient_funds"
    status_code = 402

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"Insufficient tokens. Required: {required}, available: {max(available, 0)}.")
        self.required = int(required)
        self.available = int(available)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update({"required": self.required, "available": max(self.available, 0)})
        return detail


class LedgerConflict(EntitlementError):
    """A concurrent append took the same ledger position."""

    code = "ledger_conflict"
    status_code = 503


class LedgerUnavailable(EntitlementError):
    """The ledger store could not be read or written."""

    code = "ledger_unavailable"
    status_code = 503


class InvalidCategory(EntitlementError):
    code = "invalid_category"
    status_code = 422


class InvalidAmount(EntitlementError):
    code = "invalid_amount"
    status_code = 422


class InvalidTransactionKind(EntitlementError):
    code = "invalid_transaction_kind"
    status_code = 422


class LedgerWriteRejected(EntitlementError):
    """The store refused the row for a reason other than a sequence collision."""

    code = "ledger_write_rejected"
    status_code = 422


class InvalidEngagement(EntitlementError):
    code = "invalid_engagement"
    status_code = 422


class EngagementAlreadyClaimed(EntitlementError):
    """The user has already been rewarded for this (platform, action)."""

    code = "engagement_already_claimed"
    status_code = 409
