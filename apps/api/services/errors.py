"""Typed domain errors for the booking ledger."""

from __future__ import annotations

from datetime import date
from typing import Optional


class LedgerError(Exception):
    """Base class for errors returned to callers as typed results."""

    code = "ledger_error"
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"
    status_code = 409

    def __init__(self, balance: int, requested: int, expiry: Optional[date] = None):
        self.balance = balance
        self.requested = requested
        self.expiry = expiry
        detail = f"Insufficient cylinder balance. Requested: {requested}, available: {balance}."
        if expiry is not None:
            detail += f" Balance resets to the annual quota on {expiry.isoformat()}."
        super().__init__(detail)


class InvalidRequest(LedgerError):
    code = "invalid_request"
    status_code = 422


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404


class Unauthorized(LedgerError):
    code = "unauthorized"
    status_code = 403


class InvalidTransition(LedgerError):
    code = "invalid_transition"
    status_code = 409


class EntitlementBusy(LedgerError):
    code = "entitlement_busy"
    status_code = 409

    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__("Another balance update for this account is in progress. Retry shortly.")
