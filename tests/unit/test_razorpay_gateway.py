# tests/unit/test_razorpay_gateway.py
from __future__ import annotations

import base64
import json

import httpx
import pytest

from giftflow.adapters.payment_gateway import (
    RazorpayGateway,
    checkout_signature_message,
    hmac_sha256_hex,
)
from giftflow.core.errors import DownstreamUnavailableError


def _gateway(handler) -> RazorpayGateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RazorpayGateway(
        key_id="rzp_test_key",
        key_secret="shh",
        webhook_secret="whsec",
        base_url="https://gw.test",
        client=client,
    )


async def test_create_order_sends_minor_units_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "amount": 95400, "currency": "INR"})

    order = await _gateway(handler).create_payment_order(
        receipt="WK12345678", amount_minor=95400, currency="INR", notes={"order_number": "WK12345678"}
    )

    assert order.id == "order_abc"
    assert order.amount_minor == 95400
    assert seen["path"] == "/v1/orders"
    assert seen["body"]["amount"] == 95400
    assert seen["auth"] == "Basic " + base64.b64encode(b"rzp_test_key:shh").decode()


async def test_transfer_reads_first_item():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path == "/v1/payments/pay_1/transfers"
        assert body["transfers"][0]["amount"] == 78228
        return httpx.Response(200, json={"items": [{"id": "trf_9", "status": "processed"}]})

    result = await _gateway(handler).transfer(
        payment_id="pay_1", account_id="acc_1", amount_minor=78228, currency="INR", notes={}
    )
    assert result.id == "trf_9"


async def test_gateway_error_body_is_normalized():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "account suspended"}}
        )

    with pytest.raises(DownstreamUnavailableError) as ei:
        await _gateway(handler).transfer(
            payment_id="pay_1", account_id="acc_1", amount_minor=1, currency="INR", notes={}
        )
    assert "account suspended" in ei.value.message
    assert ei.value.retryable is False
    assert ei.value.upstream_status == 400
    assert ei.value.collaborator == "payment_gateway"


async def test_server_errors_and_timeouts_are_retryable():
    def boom(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(DownstreamUnavailableError) as ei:
        await _gateway(boom).fetch_payment("pay_1")
    assert ei.value.retryable is True

    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(DownstreamUnavailableError) as ei:
        await _gateway(slow).fetch_payment("pay_1")
    assert ei.value.retryable is True


def test_checkout_and_webhook_signatures():
    gw = _gateway(lambda r: httpx.Response(200, json={}))
    sig = hmac_sha256_hex("shh", checkout_signature_message("order_abc", "pay_1"))
    assert gw.verify_signature(gateway_order_id="order_abc", payment_id="pay_1", signature=sig)
    assert not gw.verify_signature(gateway_order_id="order_abc", payment_id="pay_2", signature=sig)
    assert not gw.verify_signature(gateway_order_id="order_abc", payment_id="pay_1", signature="")

    body = b'{"event":"payment.captured"}'
    assert gw.verify_webhook(body, hmac_sha256_hex("whsec", body))
    assert not gw.verify_webhook(body + b" ", hmac_sha256_hex("whsec", body))
