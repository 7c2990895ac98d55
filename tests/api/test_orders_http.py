# tests/api/test_orders_http.py
from __future__ import annotations

from tests.api._payloads import ORDER_BODY
from tests.fakes import ADMIN, CUSTOMER, OTHER_CUSTOMER, VENDOR, checkout_signature


def _assert_problem(resp, status: int, code: str):
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert body["error_code"] == code
    assert body["http_status"] == status
    assert body["message"]
    assert body["trace_id"]
    return body


async def _create(client, auth, **overrides):
    resp = await client.post("/orders", json={**ORDER_BODY, **overrides}, headers=auth(CUSTOMER))
    assert resp.status_code == 200, resp.text
    return resp.json()


async def _pay(client, auth, gateway, created, payment_id="pay_1"):
    gateway.add_payment(payment_id, created["payment_ref"])
    resp = await client.post(
        "/payment/verify",
        json={
            "order_id": created["order_id"],
            "payment_id": payment_id,
            "signature": checkout_signature(created["payment_ref"], payment_id),
        },
        headers=auth(CUSTOMER),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


async def test_create_order(client, auth, gateway):
    created = await _create(client, auth)

    assert created["status"] == "pending"
    assert created["total"] == "1054.00"
    assert created["order_number"].startswith("WK")
    assert created["payment_ref"] == "order_test_1"
    assert gateway.orders[0].amount_minor == 105400


async def test_create_order_requires_token(client):
    resp = await client.post("/orders", json=ORDER_BODY)
    _assert_problem(resp, 401, "unauthenticated")
    assert resp.headers["www-authenticate"] == "Bearer"


async def test_create_order_rejects_bad_token(client):
    resp = await client.post("/orders", json=ORDER_BODY, headers={"Authorization": "Bearer not-a-jwt"})
    _assert_problem(resp, 401, "unauthenticated")


async def test_invalid_body_is_a_400_problem(client, auth):
    bad = {**ORDER_BODY, "items": [{"product_id": "p1", "name": "Mug", "quantity": 0, "unit_price": "450"}]}
    body = _assert_problem(await client.post("/orders", json=bad, headers=auth(CUSTOMER)), 400, "validation_error")
    assert body["details"][0]["path"] == "items.0.quantity"


async def test_mismatched_total_is_rejected(client, auth, gateway):
    resp = await client.post("/orders", json={**ORDER_BODY, "total": "999"}, headers=auth(CUSTOMER))
    body = _assert_problem(resp, 400, "validation_error")
    assert body["context"]["expected"] == "1054.00"
    assert gateway.orders == []


async def test_order_visibility(client, auth):
    created = await _create(client, auth)
    oid = created["order_id"]

    assert (await client.get(f"/orders/{oid}", headers=auth(CUSTOMER))).status_code == 200
    assert (await client.get(f"/orders/{oid}", headers=auth(VENDOR))).status_code == 200
    _assert_problem(await client.get(f"/orders/{oid}", headers=auth(OTHER_CUSTOMER)), 403, "forbidden")
    _assert_problem(await client.get("/orders/424242", headers=auth(ADMIN)), 404, "order_not_found")


async def test_full_flow_over_http(client, auth, gateway, payout_account):
    created = await _create(client, auth)
    oid = created["order_id"]

    paid = await _pay(client, auth, gateway, created)
    assert paid == {"order_id": oid, "status": "awaiting_details", "payment_status": "captured"}

    resp = await client.post(
        f"/orders/{oid}/customize",
        json={"items": {"p1": {"text": "Happy birthday", "font": "serif"}}},
        headers=auth(CUSTOMER),
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["items"][0]["customization"] == {"text": "Happy birthday", "font": "serif"}

    resp = await client.post(
        f"/vendor/orders/{oid}/mockup",
        json={"images": {"p1": "https://cdn.example.com/m1.png"}},
        headers=auth(VENDOR),
    )
    assert resp.json()["status"] == "mockup_ready"

    resp = await client.post(f"/orders/{oid}/mockup", json={"approved": True}, headers=auth(CUSTOMER))
    assert resp.json()["status"] == "crafting"

    assert (await client.post(f"/vendor/orders/{oid}/ready", headers=auth(VENDOR))).json()["status"] == (
        "ready_for_pickup"
    )
    assert (await client.post(f"/vendor/orders/{oid}/dispatch", headers=auth(VENDOR))).json()["status"] == (
        "out_for_delivery"
    )

    _assert_problem(await client.post(f"/orders/{oid}/delivered", headers=auth(CUSTOMER)), 403, "forbidden")
    resp = await client.post(f"/orders/{oid}/delivered", headers=auth(ADMIN))
    assert resp.json()["status"] == "delivered"

    timeline = (await client.get(f"/orders/{oid}/timeline", headers=auth(CUSTOMER))).json()
    assert [e["new_status"] for e in timeline["events"]] == [
        "pending",
        "awaiting_details",
        "personalizing",
        "mockup_ready",
        "crafting",
        "ready_for_pickup",
        "out_for_delivery",
        "delivered",
    ]

    listing = (await client.get("/vendors/vendor-1/orders", headers=auth(VENDOR))).json()
    assert [(o["order_id"], o["status"]) for o in listing["items"]] == [(oid, "delivered")]


async def test_customization_after_mockup_is_400(client, auth, gateway, payout_account):
    created = await _create(client, auth)
    oid = created["order_id"]
    await _pay(client, auth, gateway, created)
    await client.post(f"/orders/{oid}/customize", json={"items": {"p1": {"text": "A"}}}, headers=auth(CUSTOMER))
    await client.post(
        f"/vendor/orders/{oid}/mockup", json={"images": {"p1": "https://x/m.png"}}, headers=auth(VENDOR)
    )

    resp = await client.post(
        f"/orders/{oid}/customize", json={"items": {"p1": {"text": "B"}}}, headers=auth(CUSTOMER)
    )
    body = _assert_problem(resp, 400, "invalid_transition")
    assert body["context"]["current_status"] == "mockup_ready"
    assert body["context"]["requested_status"] == "personalizing"
    assert body["context"]["allowed_from"] == ["awaiting_details", "personalizing"]

    # 打回重做必须带修改意见
    resp = await client.post(f"/orders/{oid}/mockup", json={"approved": False}, headers=auth(CUSTOMER))
    _assert_problem(resp, 400, "validation_error")
    resp = await client.post(
        f"/orders/{oid}/mockup",
        json={"approved": False, "feedback": "Use blue ink", "product_id": "p1"},
        headers=auth(CUSTOMER),
    )
    assert resp.json()["status"] == "personalizing"
    assert resp.json()["revision_request"]["message"] == "Use blue ink"


async def test_cancel_over_http(client, auth):
    created = await _create(client, auth)
    oid = created["order_id"]

    resp = await client.post(f"/orders/{oid}/cancel", json={"reason": "ordered twice"}, headers=auth(CUSTOMER))
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancel_reason"] == "ordered twice"

    _assert_problem(
        await client.post(f"/orders/{oid}/cancel", json={}, headers=auth(CUSTOMER)), 400, "invalid_transition"
    )


async def test_vendor_listing_is_private(client, auth):
    _assert_problem(await client.get("/vendors/vendor-1/orders", headers=auth(CUSTOMER)), 403, "forbidden")
    resp = await client.get("/vendors/vendor-1/orders", params={"status": "pending"}, headers=auth(ADMIN))
    assert resp.json() == {"items": []}
