"""Payment gateway callback router."""

from __future__ import annotations

import json
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.bookings import serialize_booking
from services.capabilities import ROLE_GATEWAY, Actor
from services.event_log import GATEWAY_ACTOR
from services.payment_gateway import SIGNATURE_HEADER, verify_signature
from services.reconciliation import GatewayFailure, GatewaySuccess, find_booking_by_order, reconcile

router = APIRouter()
logger = logging.getLogger(__name__)

GATEWAY = Actor(actor_id=GATEWAY_ACTOR, role=ROLE_GATEWAY)


class GatewayCallback(BaseModel):
    order_id: str
    status: Literal["success", "failure"]
    reference: Optional[str] = None
    reason: Optional[str] = None


@router.post("/webhook")
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Apply a signed gateway callback. Replays are acknowledged without side effects."""
    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Rejected gateway callback with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid gateway signature.")

    try:
        callback = GatewayCallback.model_validate(json.loads(body or b"{}"))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=422, detail=f"Malformed gateway callback: {exc}") from exc

    if callback.status == "success":
        if not callback.reference:
            raise HTTPException(status_code=422, detail="Successful callbacks must carry a payment reference.")
        outcome = GatewaySuccess(reference=callback.reference, order_id=callback.order_id)
    else:
        outcome = GatewayFailure(reason=callback.reason, order_id=callback.order_id)

    booking = await find_booking_by_order(db, callback.order_id)
    result = await reconcile(db, booking.id, outcome, actor=GATEWAY)
    return {
        "ok": True,
        "status": result.status,
        "duplicate": result.duplicate,
        "booking": serialize_booking(result.booking),
    }
