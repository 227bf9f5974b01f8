"""Payment gateway order creation and callback signature checks."""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from typing import Any, Dict, Optional

import httpx

from config import settings
from models.booking import Booking


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Gateway-Signature"


def new_order_id() -> str:
    return f"order_{uuid.uuid4().hex}"


def order_amount_minor(booking: Booking) -> int:
    return int(booking.cylinder_count) * max(int(settings.CYLINDER_UNIT_PRICE_MINOR), 0)


async def create_gateway_order(booking: Booking) -> Dict[str, Any]:
    """Register ``booking.gateway_order_id`` with the gateway.

    Timeouts and transport errors are reported in the result and never mark the
    booking paid; the booking stays PENDING until a callback arrives.
    """
    order = {
        "order_id": booking.gateway_order_id,
        "amount": order_amount_minor(booking),
        "currency": settings.CURRENCY,
        "checkout_url": None,
        "status": "created",
    }
    if not settings.PAYMENT_GATEWAY_URL:
        return order

    headers = {"Authorization": f"Bearer {settings.PAYMENT_GATEWAY_API_KEY}"}
    body = {
        "order_id": booking.gateway_order_id,
        "amount": order["amount"],
        "currency": settings.CURRENCY,
        "notes": {"booking_id": booking.id, "customer_id": booking.customer_id},
    }
    try:
        async with httpx.AsyncClient(timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS) as client:
            response = await client.post(f"{settings.PAYMENT_GATEWAY_URL.rstrip('/')}/orders", json=body, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.TimeoutException:
        logger.warning("Gateway order %s timed out; booking %s left pending", booking.gateway_order_id, booking.id)
        order["status"] = "timeout"
        return order
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Gateway order %s failed for booking %s: %s", booking.gateway_order_id, booking.id, exc)
        order["status"] = "unavailable"
        return order

    order["checkout_url"] = payload.get("checkout_url")
    order["status"] = str(payload.get("status") or "created")
    return order


def compute_signature(payload: bytes, secret: Optional[str] = None) -> str:
    key = (secret if secret is not None else settings.PAYMENT_WEBHOOK_SECRET) or ""
    return hmac.new(key.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str]) -> bool:
    """Constant-time HMAC-SHA256 check of a gateway callback body."""
    secret = (settings.PAYMENT_WEBHOOK_SECRET or "").strip()
    if not secret or not signature:
        return False
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())
