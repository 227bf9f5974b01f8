"""Admin router: booking approvals, manual payment confirmation and balance overrides."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.admin_override import adjust_balance, reset_balance, view_entitlement
from services.bookings import list_all_bookings, serialize_booking, transition_booking
from services.entitlements import serialize_entitlement
from services.reconciliation import AdminMarksFailed, AdminMarksPaid, reconcile

router = APIRouter()


class TransitionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class MarkPaidRequest(BaseModel):
    reference: Optional[str] = Field(default=None, max_length=128)


class MarkFailedRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AdjustBalanceRequest(BaseModel):
    delta: int = Field(ge=-1000, le=1000)
    reason: Optional[str] = Field(default=None, max_length=500)


@router.get("/bookings")
async def all_bookings(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    bookings = await list_all_bookings(db, auth.actor, booking_status=status, limit=limit)
    return {"bookings": [serialize_booking(item) for item in bookings]}


@router.post("/bookings/{booking_id}/{action}")
async def booking_action(
    booking_id: str,
    action: str,
    request: Optional[TransitionRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Approve, reject or deliver a booking."""
    booking = await transition_booking(
        db,
        auth.actor,
        booking_id,
        action,
        reason=request.reason if request else None,
    )
    return serialize_booking(booking)


@router.post("/payments/{booking_id}/mark-paid")
async def mark_paid(
    booking_id: str,
    request: Optional[MarkPaidRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    outcome = AdminMarksPaid(reference=request.reference if request else None)
    result = await reconcile(db, booking_id, outcome, actor=auth.actor)
    return {"status": result.status, "booking": serialize_booking(result.booking)}


@router.post("/payments/{booking_id}/mark-failed")
async def mark_failed(
    booking_id: str,
    request: Optional[MarkFailedRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    outcome = AdminMarksFailed(reason=request.reason if request else None)
    result = await reconcile(db, booking_id, outcome, actor=auth.actor)
    return {"status": result.status, "booking": serialize_booking(result.booking)}


@router.get("/entitlements/{customer_id}")
async def entitlement_detail(
    customer_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    entitlement = await view_entitlement(db, auth.actor, customer_id)
    return serialize_entitlement(entitlement)


@router.post("/entitlements/{customer_id}/adjust")
async def entitlement_adjust(
    customer_id: str,
    request: AdjustBalanceRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    entitlement = await adjust_balance(db, auth.actor, customer_id, request.delta, reason=request.reason)
    return serialize_entitlement(entitlement)


@router.post("/entitlements/{customer_id}/reset")
async def entitlement_reset(
    customer_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    entitlement = await reset_balance(db, auth.actor, customer_id)
    return serialize_entitlement(entitlement)
