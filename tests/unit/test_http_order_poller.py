# tests/unit/test_http_order_poller.py
from __future__ import annotations

import httpx
import pytest

from giftflow.core.errors import DownstreamUnavailableError
from giftflow.realtime.pollers import HttpOrderPoller


def _poller(handler) -> HttpOrderPoller:
    return HttpOrderPoller(
        base_url="https://api.giftflow.test/",
        token="tok-9",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


async def test_polls_order_and_vendor_listing():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.headers["authorization"]))
        if request.url.path == "/orders/7":
            return httpx.Response(
                200, json={"order_id": 7, "status": "crafting", "updated_at": "2026-01-01T00:00:00"}
            )
        return httpx.Response(200, json={"items": [{"order_id": 7, "status": "crafting"}]})

    poller = _poller(handler)
    snap = await poller.order(7)
    rows = await poller.vendor_orders("vendor-1")

    assert (snap.order_id, snap.status, snap.updated_at) == (7, "crafting", "2026-01-01T00:00:00")
    assert [(r.order_id, r.status) for r in rows] == [(7, "crafting")]
    assert seen == [("/orders/7", "Bearer tok-9"), ("/vendors/vendor-1/orders", "Bearer tok-9")]


async def test_http_error_is_downstream_unavailable():
    poller = _poller(lambda request: httpx.Response(503, json={}))

    with pytest.raises(DownstreamUnavailableError) as info:
        await poller.order(7)

    assert info.value.retryable


async def test_transport_error_is_downstream_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(DownstreamUnavailableError):
        await _poller(handler).vendor_orders("vendor-1")


@pytest.mark.parametrize(
    "body",
    [
        {"order_id": 7},
        {"order_id": "seven", "status": "crafting"},
        {"status": "crafting"},
        ["not", "an", "order"],
    ],
)
async def test_malformed_order_body_is_downstream_unavailable(body):
    poller = _poller(lambda request: httpx.Response(200, json=body))

    with pytest.raises(DownstreamUnavailableError) as info:
        await poller.order(7)

    assert "malformed" in str(info.value)


async def test_non_json_body_is_downstream_unavailable():
    poller = _poller(lambda request: httpx.Response(200, text="<html>maintenance</html>"))

    with pytest.raises(DownstreamUnavailableError):
        await poller.order(7)


async def test_malformed_vendor_row_is_downstream_unavailable():
    poller = _poller(
        lambda request: httpx.Response(200, json={"items": [{"order_id": 7, "status": "crafting"}, {"id": 8}]})
    )

    with pytest.raises(DownstreamUnavailableError):
        await poller.vendor_orders("vendor-1")
