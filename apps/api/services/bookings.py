"""Booking lifecycle: creation against the entitlement and admin status transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.booking import (
    MAX_CYLINDERS_PER_BOOKING,
    MIN_CYLINDERS_PER_BOOKING,
    Booking,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
)
from services.allocation import can_book
from services.capabilities import (
    BOOKING_APPROVE,
    BOOKING_CREATE,
    BOOKING_DELIVER,
    BOOKING_LIST_ALL,
    BOOKING_REJECT,
    BOOKING_RETRY_PAYMENT,
    BOOKING_SUBMIT_QR,
    Actor,
    require_capability,
)
from services.entitlements import customer_entitlement_lock, get_entitlement, log_annual_reset, utcnow
from services.errors import InsufficientBalance, InvalidRequest, InvalidTransition, NotFound
from services.event_log import append_log_entry
from services.payment_gateway import create_gateway_order, new_order_id
from services.reconciliation import (
    CODSelected,
    QRSubmitted,
    ReconciliationResult,
    apply_outcome,
    load_booking,
    notify_if_balance_changed,
    reconcile,
    record_gateway_order,
    refund_for_booking,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    action: str
    capability: str
    sources: Tuple[BookingStatus, ...]
    target: BookingStatus


TRANSITIONS: Dict[str, Transition] = {
    "approve": Transition("approve", BOOKING_APPROVE, (BookingStatus.PENDING,), BookingStatus.APPROVED),
    "reject": Transition("reject", BOOKING_REJECT, (BookingStatus.PENDING,), BookingStatus.REJECTED),
    "deliver": Transition("deliver", BOOKING_DELIVER, (BookingStatus.APPROVED,), BookingStatus.DELIVERED),
}


def validate_cylinder_count(count: Any) -> int:
    try:
        value = int(count)
    except (TypeError, ValueError):
        raise InvalidRequest("cylinder_count must be an integer.") from None
    low = MIN_CYLINDERS_PER_BOOKING
    high = MAX_CYLINDERS_PER_BOOKING
    if isinstance(count, bool) or value != count or not low <= value <= high:
        raise InvalidRequest(f"cylinder_count must be between {low} and {high}.")
    return value


def parse_delivery_date(value: Union[date, str, None], today: date) -> date:
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        try:
            parsed = date.fromisoformat(str(value or "").strip())
        except ValueError:
            raise InvalidRequest(f"delivery_date '{value}' is not a valid YYYY-MM-DD date.") from None
    if parsed < today:
        raise InvalidRequest("delivery_date cannot be in the past.")
    return parsed


def parse_payment_method(value: Union[PaymentMethod, str]) -> PaymentMethod:
    try:
        return PaymentMethod(str(getattr(value, "value", value)).strip().upper())
    except ValueError:
        allowed = ", ".join(method.value for method in PaymentMethod)
        raise InvalidRequest(f"payment_method must be one of: {allowed}.") from None


def serialize_booking(booking: Booking) -> Dict[str, Any]:
    return {
        "id": booking.id,
        "customer_id": booking.customer_id,
        "cylinder_count": booking.cylinder_count,
        "delivery_address": booking.delivery_address,
        "delivery_date": booking.delivery_date.isoformat() if booking.delivery_date else None,
        "booking_status": booking.booking_status,
        "payment_method": booking.payment_method,
        "payment_status": booking.payment_status,
        "payment_reference": booking.payment_reference,
        "gateway_order_id": booking.gateway_order_id,
        "balance_deducted": bool(booking.balance_deducted),
        "created_at": booking.created_at.isoformat() if booking.created_at else None,
    }


async def create_booking(
    db: AsyncSession,
    actor: Actor,
    *,
    cylinder_count: Any,
    delivery_address: str,
    delivery_date: Union[date, str],
    payment_method: Union[PaymentMethod, str],
    now: Optional[datetime] = None,
) -> Tuple[Booking, Optional[Dict[str, Any]]]:
    """Create a booking for ``actor`` if the entitlement allows it.

    Returns the booking and, for gateway payments, the order to pay against.
    """
    require_capability(actor.role, BOOKING_CREATE)
    current = now or utcnow()
    count = validate_cylinder_count(cylinder_count)
    address = str(delivery_address or "").strip()
    if not address:
        raise InvalidRequest("delivery_address is required.")
    delivery = parse_delivery_date(delivery_date, current.date())
    method = parse_payment_method(payment_method)
    customer_id = actor.actor_id

    result: Optional[ReconciliationResult] = None
    async with customer_entitlement_lock(customer_id):
        entitlement = await get_entitlement(db, customer_id, for_update=True)
        previous = {"balance": entitlement.balance, "expiry": entitlement.expiry.isoformat()}
        decision = can_book(entitlement, count, current)
        if decision.reset_applied:
            await db.flush()
            await log_annual_reset(db, entitlement, previous=previous)
        if not decision.allowed:
            await append_log_entry(
                db,
                actor_id=customer_id,
                action="booking.denied",
                entity_id=customer_id,
                metadata={"requested": count, "balance": decision.balance, "reason": decision.reason},
            )
            await db.commit()
            raise InsufficientBalance(decision.balance, count, decision.expiry)

        booking = Booking(
            customer_id=customer_id,
            cylinder_count=count,
            delivery_address=address,
            delivery_date=delivery,
            booking_status=BookingStatus.PENDING.value,
            payment_method=method.value,
            payment_status=PaymentStatus.PENDING.value,
            gateway_order_id=new_order_id() if method == PaymentMethod.GATEWAY else None,
            balance_deducted=False,
            payment_attempt=1,
        )
        db.add(booking)
        await db.flush()
        await append_log_entry(
            db,
            actor_id=customer_id,
            action="booking.created",
            entity_id=booking.id,
            metadata={"cylinder_count": count, "payment_method": method.value},
        )
        if method == PaymentMethod.GATEWAY:
            await record_gateway_order(db, booking)
        if method == PaymentMethod.COD:
            result = await apply_outcome(db, booking, CODSelected(), actor_id=customer_id, now=current)
        await db.commit()

    if result is not None:
        await notify_if_balance_changed(db, result)

    order = None
    if method == PaymentMethod.GATEWAY:
        order = await create_gateway_order(booking)
    logger.info("Booking %s created for customer %s (%s x%d)", booking.id, customer_id, method.value, count)
    return booking, order


async def get_booking_for_actor(db: AsyncSession, actor: Actor, booking_id: str) -> Booking:
    """Fetch a booking; customers only see their own."""
    booking = await load_booking(db, booking_id)
    if not actor.is_admin and booking.customer_id != actor.actor_id:
        raise NotFound(f"Booking {booking_id} not found.")
    return booking


async def list_customer_bookings(db: AsyncSession, customer_id: str, limit: int = 50) -> List[Booking]:
    result = await db.execute(
        select(Booking)
        .where(Booking.customer_id == customer_id)
        .order_by(Booking.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def list_all_bookings(
    db: AsyncSession,
    actor: Actor,
    *,
    booking_status: Optional[str] = None,
    limit: int = 100,
) -> List[Booking]:
    require_capability(actor.role, BOOKING_LIST_ALL)
    query = select(Booking)
    if booking_status:
        try:
            status_value = BookingStatus(booking_status.strip().upper()).value
        except ValueError:
            raise InvalidRequest(f"Unknown booking status '{booking_status}'.") from None
        query = query.where(Booking.booking_status == status_value)
    result = await db.execute(query.order_by(Booking.created_at.desc()).limit(max(int(limit), 1)))
    return list(result.scalars().all())


async def submit_qr_payment(
    db: AsyncSession,
    actor: Actor,
    booking_id: str,
    *,
    reference: str,
    screenshot_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    """Record a QR payment claim; an admin confirms or fails it later."""
    require_capability(actor.role, BOOKING_SUBMIT_QR)
    reference = str(reference or "").strip()
    if not reference:
        raise InvalidRequest("A QR transaction reference is required.")
    booking = await get_booking_for_actor(db, actor, booking_id)
    if booking.payment_method != PaymentMethod.QR:
        raise InvalidTransition("QR payment can only be submitted for bookings created with payment_method=QR.")
    if booking.payment_status == PaymentStatus.FAILED:
        async with customer_entitlement_lock(booking.customer_id):
            booking = await load_booking(db, booking_id, for_update=True)
            if booking.payment_status == PaymentStatus.FAILED:
                booking.payment_attempt = int(booking.payment_attempt or 1) + 1
                booking.payment_status = PaymentStatus.PENDING.value
                await append_log_entry(
                    db,
                    actor_id=actor.actor_id,
                    action="payment.retry",
                    entity_id=booking.id,
                    metadata={"attempt": booking.payment_attempt, "payment_method": booking.payment_method},
                )
                await db.commit()
    return await reconcile(
        db,
        booking_id,
        QRSubmitted(reference=reference, screenshot_ref=screenshot_ref),
        actor=actor,
        now=now,
    )


async def retry_gateway_payment(
    db: AsyncSession,
    actor: Actor,
    booking_id: str,
) -> Tuple[Booking, Dict[str, Any]]:
    """Issue a fresh gateway order for a booking whose payment failed."""
    require_capability(actor.role, BOOKING_RETRY_PAYMENT)
    booking = await get_booking_for_actor(db, actor, booking_id)
    async with customer_entitlement_lock(booking.customer_id):
        booking = await load_booking(db, booking_id, for_update=True)
        if booking.payment_method != PaymentMethod.GATEWAY:
            raise InvalidTransition("Only gateway payments can be retried online.")
        if booking.payment_status != PaymentStatus.FAILED:
            raise InvalidTransition(f"Payment is {booking.payment_status}; only FAILED payments can be retried.")
        if booking.booking_status == BookingStatus.REJECTED:
            raise InvalidTransition("Rejected bookings cannot be paid.")
        booking.payment_attempt = int(booking.payment_attempt or 1) + 1
        booking.payment_status = PaymentStatus.PENDING.value
        booking.gateway_order_id = new_order_id()
        await record_gateway_order(db, booking)
        await append_log_entry(
            db,
            actor_id=actor.actor_id,
            action="payment.retry",
            entity_id=booking.id,
            metadata={"attempt": booking.payment_attempt, "gateway_order_id": booking.gateway_order_id},
        )
        await db.commit()
    order = await create_gateway_order(booking)
    return booking, order


async def transition_booking(
    db: AsyncSession,
    actor: Actor,
    booking_id: str,
    action: str,
    *,
    reason: Optional[str] = None,
) -> Booking:
    """Move a booking along PENDING -> APPROVED -> DELIVERED or PENDING -> REJECTED."""
    transition = TRANSITIONS.get(action)
    if transition is None:
        raise InvalidRequest(f"Unknown booking action '{action}'.")
    require_capability(actor.role, transition.capability)

    booking = await load_booking(db, booking_id)
    refunded_balance = None
    async with customer_entitlement_lock(booking.customer_id):
        booking = await load_booking(db, booking_id, for_update=True)
        previous_status = booking.booking_status
        if previous_status not in transition.sources:
            raise InvalidTransition(f"Cannot {action} a booking that is {previous_status}.")
        if transition.target == BookingStatus.DELIVERED and booking.payment_status != PaymentStatus.SUCCESS:
            raise InvalidTransition("A booking can only be delivered once its payment has succeeded.")
        if transition.target == BookingStatus.REJECTED:
            if booking.payment_status == PaymentStatus.SUCCESS:
                raise InvalidTransition("A paid booking cannot be rejected.")
            refunded_balance = await refund_for_booking(db, booking, actor_id=actor.actor_id)

        booking.booking_status = transition.target.value
        await db.flush()
        await append_log_entry(
            db,
            actor_id=actor.actor_id,
            action=f"booking.{action}",
            entity_id=booking.id,
            metadata={"from": previous_status, "to": booking.booking_status, "reason": reason},
        )
        await db.commit()

    if refunded_balance is not None:
        await notify_if_balance_changed(
            db,
            ReconciliationResult(booking=booking, balance_changed=True, new_balance=refunded_balance),
        )
    return booking
