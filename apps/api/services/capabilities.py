"""Single role/operation capability table consulted by every mutating operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet

from models.user import ROLE_ADMIN, ROLE_CUSTOMER
from services.errors import Unauthorized


ROLE_GATEWAY = "payment_gateway"


BOOKING_CREATE = "booking.create"
BOOKING_SUBMIT_QR = "booking.submit_qr"
BOOKING_RETRY_PAYMENT = "booking.retry_payment"
BOOKING_APPROVE = "booking.approve"
BOOKING_REJECT = "booking.reject"
BOOKING_DELIVER = "booking.deliver"
BOOKING_LIST_ALL = "booking.list_all"
PAYMENT_MARK_PAID = "payment.mark_paid"
PAYMENT_MARK_FAILED = "payment.mark_failed"
PAYMENT_GATEWAY_CALLBACK = "payment.gateway_callback"
ENTITLEMENT_VIEW_OWN = "entitlement.view_own"
ENTITLEMENT_VIEW_ANY = "entitlement.view_any"
ENTITLEMENT_ADJUST = "entitlement.adjust"
ENTITLEMENT_RESET = "entitlement.reset"

_CUSTOMER_OPERATIONS: FrozenSet[str] = frozenset(
    {
        BOOKING_CREATE,
        BOOKING_SUBMIT_QR,
        BOOKING_RETRY_PAYMENT,
        ENTITLEMENT_VIEW_OWN,
    }
)

_ADMIN_OPERATIONS: FrozenSet[str] = frozenset(
    {
        BOOKING_APPROVE,
        BOOKING_REJECT,
        BOOKING_DELIVER,
        BOOKING_LIST_ALL,
        PAYMENT_MARK_PAID,
        PAYMENT_MARK_FAILED,
        ENTITLEMENT_VIEW_ANY,
        ENTITLEMENT_ADJUST,
        ENTITLEMENT_RESET,
    }
)

CAPABILITIES: Dict[str, FrozenSet[str]] = {
    ROLE_CUSTOMER: _CUSTOMER_OPERATIONS,
    ROLE_ADMIN: _ADMIN_OPERATIONS,
    ROLE_GATEWAY: frozenset({PAYMENT_GATEWAY_CALLBACK}),
}


@dataclass(frozen=True)
class Actor:
    """Verified identity performing an operation."""

    actor_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def is_permitted(role: str, operation: str) -> bool:
    """Return whether ``role`` may perform ``operation``."""
    return operation in CAPABILITIES.get(str(role or "").strip().lower(), frozenset())


def require_capability(role: str, operation: str) -> None:
    """Raise Unauthorized unless ``role`` may perform ``operation``."""
    if not is_permitted(role, operation):
        raise Unauthorized(f"Role '{role or 'anonymous'}' is not permitted to perform {operation}.")
