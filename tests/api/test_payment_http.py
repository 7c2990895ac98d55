# tests/api/test_payment_http.py
from __future__ import annotations

import json

from tests.api._payloads import ORDER_BODY
from tests.fakes import CUSTOMER, webhook_signature


async def _create(client, auth):
    resp = await client.post("/orders", json=ORDER_BODY, headers=auth(CUSTOMER))
    assert resp.status_code == 200, resp.text
    return resp.json()


def _captured(payment_ref: str, payment_id: str = "pay_1") -> bytes:
    body = {
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": payment_id, "order_id": payment_ref, "status": "captured"}}},
    }
    return json.dumps(body).encode()


async def test_verify_with_bad_signature(client, auth, gateway):
    created = await _create(client, auth)
    gateway.add_payment("pay_1", created["payment_ref"])

    resp = await client.post(
        "/payment/verify",
        json={"order_id": created["order_id"], "payment_id": "pay_1", "signature": "deadbeef"},
        headers=auth(CUSTOMER),
    )

    assert resp.status_code == 400
    assert resp.json()["error_code"] == "signature_mismatch"
    order = (await client.get(f"/orders/{created['order_id']}", headers=auth(CUSTOMER))).json()
    assert order["status"] == "pending"


async def test_webhook_requires_valid_signature(client, auth):
    created = await _create(client, auth)
    raw = _captured(created["payment_ref"])

    resp = await client.post(
        "/webhooks/razorpay",
        content=raw,
        headers={"x-razorpay-signature": "bogus", "content-type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error_code"] == "signature_mismatch"

    resp = await client.post("/webhooks/razorpay", content=raw, headers={"content-type": "application/json"})
    assert resp.status_code == 400


async def test_webhook_capture_is_idempotent(client, auth, gateway, payout_account):
    created = await _create(client, auth)
    raw = _captured(created["payment_ref"])
    headers = {"x-razorpay-signature": webhook_signature(raw), "content-type": "application/json"}

    first = await client.post("/webhooks/razorpay", content=raw, headers=headers)
    second = await client.post("/webhooks/razorpay", content=raw, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"received": True, "handled": True, "event": "payment.captured"}
    assert second.status_code == 200
    assert len(gateway.transfers) == 1
    order = (await client.get(f"/orders/{created['order_id']}", headers=auth(CUSTOMER))).json()
    assert (order["status"], order["payment_status"]) == ("awaiting_details", "captured")


async def test_webhook_acknowledges_events_it_cannot_apply(client):
    raw = json.dumps({"event": "refund.processed", "payload": {}}).encode()
    resp = await client.post(
        "/webhooks/razorpay", content=raw, headers={"x-razorpay-signature": webhook_signature(raw)}
    )
    assert resp.status_code == 200
    assert resp.json()["handled"] is False


async def test_webhook_with_garbage_body(client):
    raw = b"not json"
    resp = await client.post(
        "/webhooks/razorpay", content=raw, headers={"x-razorpay-signature": webhook_signature(raw)}
    )
    assert resp.status_code == 400
    assert resp.json()["error_code"] == "validation_error"
