"""Payment reconciliation: apply gateway, COD, QR and admin payment outcomes.

Every outcome is applied under the owning customer's entitlement lock. Each
``(booking, outcome type, payment attempt)`` is recorded once; replays are
reported as duplicates and never touch the balance again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.booking import Booking, BookingStatus, PaymentMethod, PaymentStatus
from models.gateway_order import GatewayOrder
from models.payment_reconciliation import PaymentReconciliation
from services.allocation import annual_quota, can_book, deduct
from services.capabilities import (
    BOOKING_CREATE,
    BOOKING_SUBMIT_QR,
    PAYMENT_GATEWAY_CALLBACK,
    PAYMENT_MARK_FAILED,
    PAYMENT_MARK_PAID,
    ROLE_GATEWAY,
    Actor,
    require_capability,
)
from services.entitlements import (
    customer_entitlement_lock,
    get_entitlement,
    log_annual_reset,
    utcnow,
)
from services.errors import InsufficientBalance, InvalidTransition, NotFound
from services.event_log import append_log_entry
from services.notifications import emit_balance_notification


logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"


@dataclass(frozen=True)
class GatewaySuccess:
    reference: str
    order_id: Optional[str] = None
    outcome_type: ClassVar[str] = "GATEWAY_SUCCESS"


@dataclass(frozen=True)
class GatewayFailure:
    reason: Optional[str] = None
    order_id: Optional[str] = None
    outcome_type: ClassVar[str] = "GATEWAY_FAILURE"


@dataclass(frozen=True)
class CODSelected:
    outcome_type: ClassVar[str] = "COD_SELECTED"


@dataclass(frozen=True)
class QRSubmitted:
    reference: str
    screenshot_ref: Optional[str] = None
    outcome_type: ClassVar[str] = "QR_SUBMITTED"


@dataclass(frozen=True)
class AdminMarksPaid:
    reference: Optional[str] = None
    outcome_type: ClassVar[str] = "ADMIN_MARKS_PAID"


@dataclass(frozen=True)
class AdminMarksFailed:
    reason: Optional[str] = None
    outcome_type: ClassVar[str] = "ADMIN_MARKS_FAILED"


PaymentOutcome = Union[GatewaySuccess, GatewayFailure, CODSelected, QRSubmitted, AdminMarksPaid, AdminMarksFailed]

_SUCCESS_OUTCOMES = (GatewaySuccess, AdminMarksPaid)

REQUIRED_CAPABILITY = {
    GatewaySuccess: PAYMENT_GATEWAY_CALLBACK,
    GatewayFailure: PAYMENT_GATEWAY_CALLBACK,
    CODSelected: BOOKING_CREATE,
    QRSubmitted: BOOKING_SUBMIT_QR,
    AdminMarksPaid: PAYMENT_MARK_PAID,
    AdminMarksFailed: PAYMENT_MARK_FAILED,
}


@dataclass
class ReconciliationResult:
    booking: Booking
    status: str = APPLIED
    balance_changed: bool = False
    new_balance: Optional[int] = None

    @property
    def duplicate(self) -> bool:
        return self.status == DUPLICATE


def idempotency_key(booking: Booking, outcome: PaymentOutcome) -> str:
    return f"{booking.id}:{outcome.outcome_type}:{int(booking.payment_attempt or 1)}"


async def load_booking(db: AsyncSession, booking_id: str, *, for_update: bool = False) -> Booking:
    query = select(Booking).where(Booking.id == booking_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found.")
    return booking


async def record_gateway_order(db: AsyncSession, booking: Booking) -> GatewayOrder:
    """Remember ``booking.gateway_order_id`` for the booking's current attempt."""
    order = GatewayOrder(
        order_id=booking.gateway_order_id,
        booking_id=booking.id,
        payment_attempt=int(booking.payment_attempt or 1),
    )
    db.add(order)
    await db.flush()
    return order


async def find_booking_by_order(db: AsyncSession, order_id: str) -> Booking:
    """Resolve a gateway order to its booking, including orders superseded by a retry."""
    result = await db.execute(select(Booking).where(Booking.gateway_order_id == order_id))
    booking = result.scalar_one_or_none()
    if booking is not None:
        return booking

    result = await db.execute(
        select(Booking).join(GatewayOrder, GatewayOrder.booking_id == Booking.id).where(GatewayOrder.order_id == order_id)
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFound(f"No booking matches gateway order {order_id}.")
    return booking


async def deduct_for_booking(
    db: AsyncSession,
    booking: Booking,
    *,
    actor_id: str,
    now: datetime,
) -> Optional[int]:
    """Deduct the booking's cylinders once. Caller holds the customer lock.

    Returns the new balance, or None when the booking was already deducted.
    A due annual reset is applied and committed before the check, even when the
    deduction is then refused.
    """
    if booking.balance_deducted:
        return None

    entitlement = await get_entitlement(db, booking.customer_id, for_update=True)
    previous = {"balance": entitlement.balance, "expiry": entitlement.expiry.isoformat()}
    decision = can_book(entitlement, booking.cylinder_count, now)
    if decision.reset_applied:
        await db.flush()
        await log_annual_reset(db, entitlement, previous=previous)

    if not decision.allowed:
        await append_log_entry(
            db,
            actor_id=actor_id,
            action="entitlement.deduction_denied",
            entity_id=booking.id,
            metadata={"requested": booking.cylinder_count, "balance": decision.balance},
        )
        await db.commit()
        raise InsufficientBalance(decision.balance, booking.cylinder_count, decision.expiry)

    remaining = deduct(entitlement, booking.cylinder_count)
    booking.balance_deducted = True
    await db.flush()
    await append_log_entry(
        db,
        actor_id=actor_id,
        action="entitlement.deducted",
        entity_id=booking.customer_id,
        metadata={"booking_id": booking.id, "count": booking.cylinder_count, "balance": remaining},
    )
    return remaining


async def refund_for_booking(
    db: AsyncSession,
    booking: Booking,
    *,
    actor_id: str,
) -> Optional[int]:
    """Return a deducted booking's cylinders, capped at the annual quota."""
    if not booking.balance_deducted:
        return None

    entitlement = await get_entitlement(db, booking.customer_id, for_update=True)
    restored = min(int(entitlement.balance) + int(booking.cylinder_count), annual_quota())
    entitlement.balance = max(restored, int(entitlement.balance))
    booking.balance_deducted = False
    await db.flush()
    await append_log_entry(
        db,
        actor_id=actor_id,
        action="entitlement.refunded",
        entity_id=booking.customer_id,
        metadata={"booking_id": booking.id, "count": booking.cylinder_count, "balance": entitlement.balance},
    )
    return int(entitlement.balance)


async def _apply_gateway_success(db, booking, outcome: GatewaySuccess, *, actor_id, now) -> Optional[int]:
    if booking.booking_status == BookingStatus.REJECTED:
        raise InvalidTransition(f"Booking {booking.id} was rejected; payment {outcome.reference} needs a manual refund.")
    new_balance = await deduct_for_booking(db, booking, actor_id=actor_id, now=now)
    booking.payment_status = PaymentStatus.SUCCESS.value
    booking.payment_reference = outcome.reference
    if settings.AUTO_APPROVE_ON_PAYMENT and booking.booking_status == BookingStatus.PENDING:
        booking.booking_status = BookingStatus.APPROVED.value
    return new_balance


async def _apply_gateway_failure(db, booking, outcome: GatewayFailure, *, actor_id, now) -> Optional[int]:
    booking.payment_status = PaymentStatus.FAILED.value
    return None


async def _apply_cod_selected(db, booking, outcome: CODSelected, *, actor_id, now) -> Optional[int]:
    booking.payment_method = PaymentMethod.COD.value
    booking.payment_status = PaymentStatus.PENDING.value
    if settings.COD_DEDUCTION_POINT == "booking":
        return await deduct_for_booking(db, booking, actor_id=actor_id, now=now)
    return None


async def _apply_qr_submitted(db, booking, outcome: QRSubmitted, *, actor_id, now) -> Optional[int]:
    booking.payment_method = PaymentMethod.QR.value
    booking.payment_status = PaymentStatus.PENDING.value
    booking.payment_reference = outcome.reference
    booking.qr_screenshot_ref = outcome.screenshot_ref
    return None


async def _apply_admin_marks_paid(db, booking, outcome: AdminMarksPaid, *, actor_id, now) -> Optional[int]:
    if booking.booking_status == BookingStatus.REJECTED:
        raise InvalidTransition(f"Booking {booking.id} is rejected and cannot be marked paid.")
    if booking.payment_status != PaymentStatus.PENDING:
        raise InvalidTransition(f"Only pending payments can be marked paid (current: {booking.payment_status}).")
    if booking.payment_method not in (PaymentMethod.COD, PaymentMethod.QR):
        raise InvalidTransition("Gateway payments are confirmed by the gateway callback.")
    new_balance = await deduct_for_booking(db, booking, actor_id=actor_id, now=now)
    booking.payment_status = PaymentStatus.SUCCESS.value
    if outcome.reference:
        booking.payment_reference = outcome.reference
    return new_balance


async def _apply_admin_marks_failed(db, booking, outcome: AdminMarksFailed, *, actor_id, now) -> Optional[int]:
    if booking.payment_status != PaymentStatus.PENDING:
        raise InvalidTransition(f"Only pending payments can be marked failed (current: {booking.payment_status}).")
    if booking.payment_method not in (PaymentMethod.COD, PaymentMethod.QR):
        raise InvalidTransition("Gateway payments are settled by the gateway callback.")
    booking.payment_status = PaymentStatus.FAILED.value
    return await refund_for_booking(db, booking, actor_id=actor_id)


_HANDLERS = {
    GatewaySuccess: _apply_gateway_success,
    GatewayFailure: _apply_gateway_failure,
    CODSelected: _apply_cod_selected,
    QRSubmitted: _apply_qr_submitted,
    AdminMarksPaid: _apply_admin_marks_paid,
    AdminMarksFailed: _apply_admin_marks_failed,
}


def _stale_reason(booking: Booking, outcome: PaymentOutcome) -> Optional[str]:
    order_id = getattr(outcome, "order_id", None)
    if order_id and booking.gateway_order_id and order_id != booking.gateway_order_id:
        return "superseded_order"
    if isinstance(outcome, GatewayFailure) and booking.payment_status == PaymentStatus.SUCCESS:
        return "already_paid"
    if isinstance(outcome, QRSubmitted) and booking.payment_status == PaymentStatus.SUCCESS:
        return "already_paid"
    return None


async def apply_outcome(
    db: AsyncSession,
    booking: Booking,
    outcome: PaymentOutcome,
    *,
    actor_id: str,
    now: datetime,
) -> ReconciliationResult:
    """Apply ``outcome`` inside a transaction the caller commits.

    The caller must hold the customer lock and have loaded ``booking`` for update.
    """
    key = idempotency_key(booking, outcome)
    existing = await db.execute(select(PaymentReconciliation.id).where(PaymentReconciliation.idempotency_key == key))
    already_paid = isinstance(outcome, _SUCCESS_OUTCOMES) and booking.payment_status == PaymentStatus.SUCCESS
    if existing.scalar_one_or_none() or already_paid:
        await append_log_entry(
            db,
            actor_id=actor_id,
            action="payment.reconcile_duplicate",
            entity_id=booking.id,
            metadata={"outcome": outcome.outcome_type, "idempotency_key": key},
        )
        logger.info("Duplicate reconciliation %s ignored", key)
        return ReconciliationResult(booking=booking, status=DUPLICATE)

    stale = _stale_reason(booking, outcome)
    if stale:
        await append_log_entry(
            db,
            actor_id=actor_id,
            action="payment.reconcile_ignored",
            entity_id=booking.id,
            metadata={
                "outcome": outcome.outcome_type,
                "reason": stale,
                "order_id": getattr(outcome, "order_id", None),
                "reference": getattr(outcome, "reference", None),
            },
        )
        if isinstance(outcome, GatewaySuccess):
            logger.warning(
                "Payment %s for superseded order %s on booking %s needs a manual refund",
                outcome.reference,
                outcome.order_id,
                booking.id,
            )
        return ReconciliationResult(booking=booking, status=IGNORED)

    handler = _HANDLERS[type(outcome)]
    new_balance = await handler(db, booking, outcome, actor_id=actor_id, now=now)
    db.add(
        PaymentReconciliation(
            idempotency_key=key,
            booking_id=booking.id,
            outcome_type=outcome.outcome_type,
            reference=getattr(outcome, "reference", None),
            actor_id=actor_id,
        )
    )
    await db.flush()
    await append_log_entry(
        db,
        actor_id=actor_id,
        action=f"payment.{outcome.outcome_type.lower()}",
        entity_id=booking.id,
        metadata={
            "payment_status": booking.payment_status,
            "booking_status": booking.booking_status,
            "payment_reference": booking.payment_reference,
            "reason": getattr(outcome, "reason", None),
        },
    )
    return ReconciliationResult(
        booking=booking,
        status=APPLIED,
        balance_changed=new_balance is not None,
        new_balance=new_balance,
    )


async def notify_if_balance_changed(db: AsyncSession, result: ReconciliationResult) -> None:
    if not result.balance_changed:
        return
    entitlement = await get_entitlement(db, result.booking.customer_id)
    await emit_balance_notification(
        db,
        customer_id=entitlement.customer_id,
        booking_id=result.booking.id,
        new_balance=entitlement.balance,
        expiry=entitlement.expiry,
    )


async def reconcile(
    db: AsyncSession,
    booking_id: str,
    outcome: PaymentOutcome,
    *,
    actor: Actor,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    """Apply a payment outcome to a booking and its owning entitlement."""
    require_capability(actor.role, REQUIRED_CAPABILITY[type(outcome)])
    current = now or utcnow()
    booking = await load_booking(db, booking_id)
    if not actor.is_admin and actor.role != ROLE_GATEWAY and booking.customer_id != actor.actor_id:
        raise NotFound(f"Booking {booking_id} not found.")
    async with customer_entitlement_lock(booking.customer_id):
        booking = await load_booking(db, booking_id, for_update=True)
        result = await apply_outcome(db, booking, outcome, actor_id=actor.actor_id, now=current)
        await db.commit()
    await notify_if_balance_changed(db, result)
    return result
