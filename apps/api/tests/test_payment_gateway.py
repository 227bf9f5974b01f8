import httpx
import pytest

from config import settings
from models.booking import Booking
from services import payment_gateway
from services.payment_gateway import compute_signature, create_gateway_order, verify_signature


def _booking(count=2):
    return Booking(id="booking-gw", customer_id="cust-gw", cylinder_count=count, gateway_order_id="order_abc")


def _patch_transport(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def _client(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(payment_gateway.httpx, "AsyncClient", _client)


def test_signature_round_trip_and_tampering():
    body = b'{"order_id":"order_abc","status":"success","reference":"pay_1"}'
    signature = compute_signature(body)

    assert verify_signature(body, signature)
    assert verify_signature(body, signature.upper())
    assert not verify_signature(body.replace(b"pay_1", b"pay_2"), signature)
    assert not verify_signature(body, None)
    assert not verify_signature(body, compute_signature(body, "some-other-secret"))


def test_signature_check_fails_closed_without_secret(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
    body = b"{}"
    assert not verify_signature(body, compute_signature(body, ""))


@pytest.mark.asyncio
async def test_order_without_configured_gateway_is_created_locally(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_GATEWAY_URL", "")
    monkeypatch.setattr(settings, "CYLINDER_UNIT_PRICE_MINOR", 90000)

    order = await create_gateway_order(_booking(2))

    assert order["order_id"] == "order_abc"
    assert order["amount"] == 180000
    assert order["status"] == "created"


@pytest.mark.asyncio
async def test_order_is_registered_with_gateway(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_GATEWAY_URL", "https://gateway.test/v1/")
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"status": "created", "checkout_url": "https://pay.test/order_abc"})

    _patch_transport(monkeypatch, handler)
    order = await create_gateway_order(_booking())

    assert seen["url"] == "https://gateway.test/v1/orders"
    assert order["checkout_url"] == "https://pay.test/order_abc"


@pytest.mark.asyncio
async def test_gateway_timeout_leaves_order_pending(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_GATEWAY_URL", "https://gateway.test")

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("gateway too slow", request=request)

    _patch_transport(monkeypatch, handler)
    order = await create_gateway_order(_booking())

    assert order["status"] == "timeout"
    assert order["checkout_url"] is None


@pytest.mark.asyncio
async def test_gateway_error_is_reported_unavailable(monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_GATEWAY_URL", "https://gateway.test")
    _patch_transport(monkeypatch, lambda request: httpx.Response(503, json={"error": "maintenance"}))

    order = await create_gateway_order(_booking())
    assert order["status"] == "unavailable"
