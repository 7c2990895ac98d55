# tests/services/test_status_hub.py
from __future__ import annotations

import pytest

from giftflow.domain.events import StatusChanged
from giftflow.realtime.bus import RealtimeUpdateBus, SubscriptionState
from giftflow.realtime.channel import ChannelClosed
from giftflow.realtime.hub import HubPushChannel, StatusHub
from giftflow.realtime.pollers import SessionOrderPoller
from tests.fakes import VENDOR, RecordingSleep, wait_until
from tests.services._helpers import drive_to, pay, place_order


def _event(order_id=1, old="pending", new="awaiting_details", vendor="vendor-1"):
    return StatusChanged(order_id=order_id, old_status=old, new_status=new, vendor_id=vendor, customer_id="cust-1")


async def test_publish_fans_out_to_order_and_vendor_channels():
    hub = StatusHub()
    order_ch = hub.open("order:1")
    vendor_ch = hub.open("vendor:vendor-1:orders")
    other = hub.open("order:2")

    await hub.publish(_event())

    got = await order_ch.receive()
    assert got["order_id"] == 1
    assert got["status"] == "awaiting_details"
    assert "updated_at" in got
    assert await vendor_ch.receive() == {"order_id": 1, "status": "awaiting_details", "action": "status_changed"}
    assert other.queue.empty()


async def test_vendor_payload_actions():
    assert _event(old=None, new="pending").vendor_payload()["action"] == "created"
    assert _event(new="cancelled").vendor_payload()["action"] == "cancelled"


async def test_slow_consumer_drops_oldest():
    hub = StatusHub(max_queue=2)
    ch = hub.open("order:1")
    for status in ("awaiting_details", "personalizing", "mockup_ready"):
        await hub.publish(_event(new=status))

    assert (await ch.receive())["status"] == "personalizing"
    assert (await ch.receive())["status"] == "mockup_ready"


async def test_close_detaches_and_close_all_ends_receivers():
    hub = StatusHub()
    a = hub.open("order:1")
    b = hub.open("order:1")
    assert hub.subscriber_count("order:1") == 2

    await a.close()
    assert hub.subscriber_count("order:1") == 1
    with pytest.raises(ChannelClosed):
        await a.receive()

    hub.close_all()
    with pytest.raises(ChannelClosed):
        await b.receive()
    assert hub.subscriber_count("order:1") == 0


async def test_bus_follows_lifecycle_over_in_process_push(manager, gateway, hub, payout_account, session_factory):
    order = await place_order(manager)
    bus = RealtimeUpdateBus(HubPushChannel(hub), SessionOrderPoller(session_factory), sleep=RecordingSleep())
    received = []
    vendor_updates = []

    sub = bus.subscribe_order(order.id, received.append)
    vsub = bus.subscribe_vendor_orders(VENDOR.user_id, vendor_updates.append)
    await wait_until(lambda: sub.state is SubscriptionState.PUSH_ACTIVE)
    await wait_until(lambda: vsub.state is SubscriptionState.PUSH_ACTIVE)
    assert hub.subscriber_count(f"order:{order.id}") == 1

    await pay(manager, gateway, order)
    await drive_to(manager, order.id, "personalizing")
    await wait_until(lambda: len(received) == 2)
    await wait_until(lambda: len(vendor_updates) == 2)

    assert [u["status"] for u in received] == ["awaiting_details", "personalizing"]
    assert all(u["source"] == "push" for u in received)
    assert [(u["order_id"], u["status"]) for u in vendor_updates] == [
        (order.id, "awaiting_details"),
        (order.id, "personalizing"),
    ]

    await bus.close()
    assert vsub.closed
    assert hub.subscriber_count(f"order:{order.id}") == 0


async def test_session_poller_reads_current_status(manager, gateway, payout_account, session_factory):
    order = await place_order(manager)
    await pay(manager, gateway, order)
    poller = SessionOrderPoller(session_factory)

    snap = await poller.order(order.id)
    assert (snap.order_id, snap.status, snap.sub_status) == (order.id, "awaiting_details", "payment captured")

    rows = await poller.vendor_orders(VENDOR.user_id)
    assert [(r.order_id, r.status) for r in rows] == [(order.id, "awaiting_details")]
    assert await poller.vendor_orders("vendor-nobody") == []
