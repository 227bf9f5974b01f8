from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy.future import select

from config import settings
from models.booking import PaymentStatus
from models.log_entry import LogEntry
from models.user import ROLE_ADMIN, ROLE_CUSTOMER, User
from services.bookings import create_booking, retry_gateway_payment, submit_qr_payment, transition_booking
from services.capabilities import ROLE_GATEWAY, Actor
from services.entitlements import create_entitlement, get_entitlement
from services.errors import InsufficientBalance, InvalidTransition, NotFound, Unauthorized
from services.reconciliation import (
    DUPLICATE,
    IGNORED,
    AdminMarksFailed,
    AdminMarksPaid,
    GatewayFailure,
    GatewaySuccess,
    find_booking_by_order,
    load_booking,
    reconcile,
)


T0 = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
CUSTOMER = Actor(actor_id="cust-1", role=ROLE_CUSTOMER)
ADMIN = Actor(actor_id="admin-1", role=ROLE_ADMIN)
GATEWAY = Actor(actor_id="payment_gateway", role=ROLE_GATEWAY)


async def _book(session, count, method, now=T0, actor=CUSTOMER):
    booking, order = await create_booking(
        session,
        actor,
        cylinder_count=count,
        delivery_address="12 Station Road",
        delivery_date=now.date() + timedelta(days=2),
        payment_method=method,
        now=now,
    )
    return booking, order


async def _balance(session_maker, customer_id="cust-1"):
    async with session_maker() as session:
        entitlement = await get_entitlement(session, customer_id)
        return entitlement.balance, entitlement.expiry


async def _actions(session_maker, entity_id):
    async with session_maker() as session:
        result = await session.execute(
            select(LogEntry.action).where(LogEntry.entity_id == entity_id).order_by(LogEntry.id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_new_customer_gateway_booking_deducts_on_success(session_maker):
    async with session_maker() as session:
        session.add(User(id="cust-1", email="cust-1@example.com"))
        await session.flush()
        entitlement = await create_entitlement(session, "cust-1", now=T0)
        await session.commit()
        assert entitlement.balance == 12
        assert entitlement.expiry == date(2027, 1, 15)

    async with session_maker() as session:
        booking, order = await _book(session, 3, "GATEWAY")
        assert order["order_id"] == booking.gateway_order_id
        assert booking.payment_status == PaymentStatus.PENDING

    assert (await _balance(session_maker))[0] == 12

    async with session_maker() as session:
        result = await reconcile(session, booking.id, GatewaySuccess(reference="pay_001"), actor=GATEWAY, now=T0)

    assert result.booking.payment_status == PaymentStatus.SUCCESS
    assert result.booking.booking_status == "PENDING"
    assert result.new_balance == 9
    assert (await _balance(session_maker))[0] == 9


@pytest.mark.asyncio
async def test_duplicate_gateway_success_deducts_once(session_maker, seed_customer):
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, _ = await _book(session, 3, "GATEWAY")

    async with session_maker() as session:
        first = await reconcile(session, booking.id, GatewaySuccess(reference="pay_001"), actor=GATEWAY, now=T0)
    async with session_maker() as session:
        second = await reconcile(session, booking.id, GatewaySuccess(reference="pay_001"), actor=GATEWAY, now=T0)

    assert first.duplicate is False
    assert second.status == DUPLICATE
    assert second.balance_changed is False
    assert (await _balance(session_maker))[0] == 9
    actions = await _actions(session_maker, booking.id)
    assert actions.count("payment.gateway_success") == 1
    assert "payment.reconcile_duplicate" in actions


@pytest.mark.asyncio
async def test_zero_balance_before_expiry_is_denied(session_maker, seed_customer):
    await seed_customer("cust-1", balance=0, expiry=date(2027, 1, 15))
    six_months_later = T0 + timedelta(days=182)

    async with session_maker() as session:
        with pytest.raises(InsufficientBalance) as exc_info:
            await _book(session, 1, "GATEWAY", now=six_months_later)

    assert exc_info.value.balance == 0
    assert "2027-01-15" in exc_info.value.detail
    assert (await _balance(session_maker))[0] == 0


@pytest.mark.asyncio
async def test_expired_entitlement_resets_then_deducts(session_maker, seed_customer):
    yesterday = T0.date() - timedelta(days=1)
    await seed_customer("cust-1", balance=2, expiry=yesterday)

    async with session_maker() as session:
        booking, _ = await _book(session, 5, "GATEWAY")

    balance, expiry = await _balance(session_maker)
    assert balance == 12
    assert expiry == date(2027, 1, 15)

    async with session_maker() as session:
        await reconcile(session, booking.id, GatewaySuccess(reference="pay_reset"), actor=GATEWAY, now=T0)

    assert (await _balance(session_maker))[0] == 7
    assert "entitlement.annual_reset" in await _actions(session_maker, "cust-1")


@pytest.mark.asyncio
async def test_gateway_failure_then_retry_then_success(session_maker, seed_customer):
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, _ = await _book(session, 2, "GATEWAY")
    first_order = booking.gateway_order_id

    async with session_maker() as session:
        failed = await reconcile(
            session,
            booking.id,
            GatewayFailure(reason="card_declined", order_id=first_order),
            actor=GATEWAY,
            now=T0,
        )
    assert failed.booking.payment_status == PaymentStatus.FAILED
    assert (await _balance(session_maker))[0] == 12

    async with session_maker() as session:
        retried, order = await retry_gateway_payment(session, CUSTOMER, booking.id)
    assert retried.payment_status == PaymentStatus.PENDING
    assert retried.payment_attempt == 2
    assert order["order_id"] != first_order

    async with session_maker() as session:
        assert (await find_booking_by_order(session, first_order)).id == booking.id
        assert (await find_booking_by_order(session, order["order_id"])).id == booking.id

    async with session_maker() as session:
        stale = await reconcile(
            session,
            booking.id,
            GatewayFailure(reason="late", order_id=first_order),
            actor=GATEWAY,
            now=T0,
        )
    assert stale.status == IGNORED
    assert stale.booking.payment_status == PaymentStatus.PENDING

    async with session_maker() as session:
        paid = await reconcile(
            session,
            booking.id,
            GatewaySuccess(reference="pay_retry", order_id=order["order_id"]),
            actor=GATEWAY,
            now=T0,
        )
    assert paid.booking.payment_status == PaymentStatus.SUCCESS
    assert (await _balance(session_maker))[0] == 10


@pytest.mark.asyncio
async def test_cod_deducts_at_booking_and_admin_marks_paid_once(session_maker, seed_customer):
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, order = await _book(session, 2, "COD")
    assert order is None
    assert booking.balance_deducted is True
    assert (await _balance(session_maker))[0] == 10

    async with session_maker() as session:
        result = await reconcile(session, booking.id, AdminMarksPaid(reference="cash-7781"), actor=ADMIN, now=T0)
    assert result.booking.payment_status == PaymentStatus.SUCCESS
    assert result.balance_changed is False

    async with session_maker() as session:
        again = await reconcile(session, booking.id, AdminMarksPaid(), actor=ADMIN, now=T0)
    assert again.duplicate is True
    assert (await _balance(session_maker))[0] == 10


@pytest.mark.asyncio
async def test_cod_deduction_at_confirmation_when_configured(session_maker, seed_customer, monkeypatch):
    monkeypatch.setattr(settings, "COD_DEDUCTION_POINT", "confirmation")
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, _ = await _book(session, 4, "COD")
    assert booking.balance_deducted is False
    assert (await _balance(session_maker))[0] == 12

    async with session_maker() as session:
        result = await reconcile(session, booking.id, AdminMarksPaid(), actor=ADMIN, now=T0)
    assert result.new_balance == 8
    assert (await _balance(session_maker))[0] == 8


@pytest.mark.asyncio
async def test_admin_marks_cod_failed_refunds_deduction(session_maker, seed_customer):
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, _ = await _book(session, 3, "COD")
    assert (await _balance(session_maker))[0] == 9

    async with session_maker() as session:
        result = await reconcile(session, booking.id, AdminMarksFailed(reason="not home"), actor=ADMIN, now=T0)
    assert result.booking.payment_status == PaymentStatus.FAILED
    assert result.booking.balance_deducted is False
    assert (await _balance(session_maker))[0] == 12


@pytest.mark.asyncio
async def test_qr_submission_waits_for_admin_and_can_be_resubmitted(session_maker, seed_customer):
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, _ = await _book(session, 1, "QR")

    async with session_maker() as session:
        submitted = await submit_qr_payment(session, CUSTOMER, booking.id, reference="UPI-1", screenshot_ref="s3://qr/1.png", now=T0)
    assert submitted.booking.payment_status == PaymentStatus.PENDING
    assert submitted.booking.payment_reference == "UPI-1"
    assert (await _balance(session_maker))[0] == 12

    async with session_maker() as session:
        await reconcile(session, booking.id, AdminMarksFailed(reason="no such txn"), actor=ADMIN, now=T0)

    async with session_maker() as session:
        resubmitted = await submit_qr_payment(session, CUSTOMER, booking.id, reference="UPI-2", now=T0)
    assert resubmitted.status == "applied"
    assert resubmitted.booking.payment_attempt == 2
    assert resubmitted.booking.payment_status == PaymentStatus.PENDING

    async with session_maker() as session:
        paid = await reconcile(session, booking.id, AdminMarksPaid(), actor=ADMIN, now=T0)
    assert paid.booking.payment_status == PaymentStatus.SUCCESS
    assert paid.booking.payment_reference == "UPI-2"
    assert (await _balance(session_maker))[0] == 11


@pytest.mark.asyncio
async def test_payment_success_with_exhausted_balance_stays_pending(session_maker, seed_customer):
    await seed_customer("cust-1", balance=3, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        first, _ = await _book(session, 3, "GATEWAY")
    async with session_maker() as session:
        second, _ = await _book(session, 2, "GATEWAY")
    async with session_maker() as session:
        await reconcile(session, first.id, GatewaySuccess(reference="pay_a"), actor=GATEWAY, now=T0)

    async with session_maker() as session:
        with pytest.raises(InsufficientBalance):
            await reconcile(session, second.id, GatewaySuccess(reference="pay_b"), actor=GATEWAY, now=T0)

    async with session_maker() as session:
        reloaded = await load_booking(session, second.id)
    assert reloaded.payment_status == PaymentStatus.PENDING
    assert (await _balance(session_maker))[0] == 0


@pytest.mark.asyncio
async def test_admin_cannot_mark_gateway_booking_paid(session_maker, seed_customer):
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, _ = await _book(session, 1, "GATEWAY")

    async with session_maker() as session:
        with pytest.raises(InvalidTransition):
            await reconcile(session, booking.id, AdminMarksPaid(), actor=ADMIN, now=T0)


@pytest.mark.asyncio
async def test_gateway_success_after_rejection_is_refused(session_maker, seed_customer):
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, order = await _book(session, 2, "GATEWAY")
    async with session_maker() as session:
        await transition_booking(session, ADMIN, booking.id, "reject", reason="out of delivery area")

    async with session_maker() as session:
        with pytest.raises(InvalidTransition):
            await reconcile(
                session,
                booking.id,
                GatewaySuccess(reference="pay_after_reject", order_id=order["order_id"]),
                actor=GATEWAY,
                now=T0,
            )

    async with session_maker() as session:
        stored = await load_booking(session, booking.id)
        assert stored.booking_status == "REJECTED"
        assert stored.payment_status == PaymentStatus.PENDING
        assert stored.payment_reference is None
        assert not stored.balance_deducted
    assert (await _balance(session_maker))[0] == 12


@pytest.mark.asyncio
async def test_outcomes_require_matching_capability(session_maker, seed_customer):
    await seed_customer("cust-1", balance=12, expiry=date(2027, 1, 15))
    await seed_customer("cust-2", balance=12, expiry=date(2027, 1, 15))
    async with session_maker() as session:
        booking, _ = await _book(session, 1, "QR")

    async with session_maker() as session:
        with pytest.raises(Unauthorized):
            await reconcile(session, booking.id, GatewaySuccess(reference="forged"), actor=CUSTOMER, now=T0)
        with pytest.raises(Unauthorized):
            await reconcile(session, booking.id, AdminMarksPaid(), actor=CUSTOMER, now=T0)

    other = Actor(actor_id="cust-2", role=ROLE_CUSTOMER)
    async with session_maker() as session:
        with pytest.raises(NotFound):
            await submit_qr_payment(session, other, booking.id, reference="UPI-x", now=T0)
