"""Customer booking and entitlement router."""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.booking import PaymentMethod
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.bookings import (
    create_booking,
    get_booking_for_actor,
    list_customer_bookings,
    retry_gateway_payment,
    serialize_booking,
    submit_qr_payment,
)
from services.capabilities import ENTITLEMENT_VIEW_OWN, require_capability
from services.entitlements import refresh_entitlement, serialize_entitlement

router = APIRouter()


class CreateBookingRequest(BaseModel):
    cylinder_count: int
    delivery_address: str = Field(min_length=1, max_length=500)
    delivery_date: date
    payment_method: PaymentMethod = PaymentMethod.GATEWAY


class QRSubmissionRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=128)
    screenshot_ref: Optional[str] = Field(default=None, max_length=500)


@router.get("/entitlement")
async def my_entitlement(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    require_capability(auth.role, ENTITLEMENT_VIEW_OWN)
    entitlement = await refresh_entitlement(db, auth.user_id)
    return serialize_entitlement(entitlement)


@router.post("/bookings")
async def book_cylinders(
    request: CreateBookingRequest,
    _rate_limit: None = Depends(rate_limit("booking_create", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    booking, order = await create_booking(
        db,
        auth.actor,
        cylinder_count=request.cylinder_count,
        delivery_address=request.delivery_address,
        delivery_date=request.delivery_date,
        payment_method=request.payment_method,
    )
    return {"booking": serialize_booking(booking), "payment_order": order}


@router.get("/bookings")
async def my_bookings(
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    bookings = await list_customer_bookings(db, auth.user_id, limit=limit)
    return {"bookings": [serialize_booking(item) for item in bookings]}


@router.get("/bookings/{booking_id}")
async def booking_detail(
    booking_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    booking = await get_booking_for_actor(db, auth.actor, booking_id)
    return serialize_booking(booking)


@router.post("/bookings/{booking_id}/qr")
async def submit_qr(
    booking_id: str,
    request: QRSubmissionRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await submit_qr_payment(
        db,
        auth.actor,
        booking_id,
        reference=request.reference,
        screenshot_ref=request.screenshot_ref,
    )
    return {"booking": serialize_booking(result.booking), "status": result.status}


@router.post("/bookings/{booking_id}/retry")
async def retry_payment(
    booking_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    booking, order = await retry_gateway_payment(db, auth.actor, booking_id)
    return {"booking": serialize_booking(booking), "payment_order": order}
