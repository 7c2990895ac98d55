# tests/services/test_realtime_update_bus.py
from __future__ import annotations

import asyncio

from giftflow.core.retry import RetryPolicy
from giftflow.realtime.bus import RealtimeUpdateBus, SubscriptionState
from giftflow.realtime.channel import ChannelError
from giftflow.realtime.pollers import OrderSnapshot
from tests.fakes import RecordingSleep, ScriptedChannel, ScriptedPoller, wait_until


def _bus(channel, poller, sleep) -> RealtimeUpdateBus:
    return RealtimeUpdateBus(channel, poller, policy=RetryPolicy(), sleep=sleep, connect_timeout=1.0)


async def test_five_failed_reconnects_then_polling_forever():
    channel = ScriptedChannel()  # 每次 connect 都失败
    poller = ScriptedPoller()
    sleep = RecordingSleep()
    bus = _bus(channel, poller, sleep)
    received = []

    sub = bus.subscribe_order(42, received.append)
    await wait_until(lambda: sub.poll_count >= 10)

    assert sub.state is SubscriptionState.POLLING
    assert sub.mode == "polling"
    assert len(channel.connects) == 6
    assert channel.connects[0] == "order:42"
    assert sleep.delays[:5] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert set(sleep.delays[5:]) == {5.0}
    # 轮询读到的状态一直没变：只回调一次
    assert [u["status"] for u in received] == ["pending"]
    assert received[0]["source"] == "poll"

    poller.order_status[42] = "awaiting_details"
    await wait_until(lambda: len(received) == 2)
    assert sub.last_delivered_status == "awaiting_details"
    assert len(channel.connects) == 6

    await bus.close()
    assert sub.state is SubscriptionState.CLOSED


async def test_vendor_subscription_polls_every_ten_seconds_and_dedups_per_order():
    poller = ScriptedPoller()
    poller.vendor_rows["vendor-1"] = [OrderSnapshot(1, "pending"), OrderSnapshot(2, "crafting")]
    sleep = RecordingSleep()
    bus = _bus(ScriptedChannel(), poller, sleep)
    received = []

    sub = bus.subscribe_vendor_orders("vendor-1", received.append)
    await wait_until(lambda: sub.poll_count >= 3)
    assert sorted((u["order_id"], u["status"]) for u in received) == [(1, "pending"), (2, "crafting")]
    assert sleep.delays[5:] and set(sleep.delays[5:]) == {10.0}

    poller.vendor_rows["vendor-1"] = [OrderSnapshot(1, "cancelled"), OrderSnapshot(2, "crafting")]
    await wait_until(lambda: len(received) == 3)
    assert received[-1] == {"order_id": 1, "status": "cancelled", "action": "status_changed", "source": "poll"}
    await sub.unsubscribe()


async def test_push_duplicates_are_suppressed():
    channel = ScriptedChannel(["ok"])
    bus = _bus(channel, ScriptedPoller(), RecordingSleep())
    received = []

    sub = bus.subscribe_order(7, received.append)
    await wait_until(lambda: sub.state is SubscriptionState.PUSH_ACTIVE)

    channel.push({"status": "awaiting_details", "sub_status": "payment captured"})
    channel.push({"status": "awaiting_details", "sub_status": "payment captured"})
    channel.push({"status": "personalizing", "sub_status": None})
    await wait_until(lambda: len(received) == 2)
    for _ in range(10):
        await asyncio.sleep(0)

    assert [u["status"] for u in received] == ["awaiting_details", "personalizing"]
    assert all(u["order_id"] == 7 and u["source"] == "push" for u in received)
    await sub.unsubscribe()
    assert channel.handles[0].closed


async def test_successful_reconnect_resets_backoff():
    channel = ScriptedChannel([ChannelError("refused"), "ok", "ok"])
    sleep = RecordingSleep()
    bus = _bus(channel, ScriptedPoller(), sleep)

    sub = bus.subscribe_order(1, lambda update: None)
    await wait_until(lambda: sub.state is SubscriptionState.PUSH_ACTIVE)
    assert sub.retry_attempt == 0

    channel.drop()
    await wait_until(lambda: len(channel.handles) == 2 and sub.state is SubscriptionState.PUSH_ACTIVE)
    assert sleep.delays == [1.0, 1.0]
    assert channel.handles[0].closed
    await sub.unsubscribe()


async def test_connect_timeout_counts_as_failure():
    class HangingChannel:
        def __init__(self) -> None:
            self.connects = 0

        async def connect(self, key):
            self.connects += 1
            await asyncio.Event().wait()

    channel = HangingChannel()
    sleep = RecordingSleep()
    bus = RealtimeUpdateBus(
        channel, ScriptedPoller(), policy=RetryPolicy(max_retries=1), sleep=sleep, connect_timeout=0.01
    )
    sub = bus.subscribe_order(3, lambda update: None)
    await wait_until(lambda: sub.state is SubscriptionState.POLLING, timeout=5.0)
    assert channel.connects == 2
    assert sleep.delays[0] == 1.0
    await sub.unsubscribe()


async def test_unsubscribe_before_first_connect_is_safe_and_idempotent():
    gate = asyncio.Event()

    class SlowChannel:
        async def connect(self, key):
            await gate.wait()
            raise AssertionError("should have been cancelled")

    bus = _bus(SlowChannel(), ScriptedPoller(), RecordingSleep())
    sub = bus.subscribe_order(5, lambda update: None)
    await asyncio.sleep(0)

    await sub.unsubscribe()
    await sub.unsubscribe()
    assert sub.closed
    assert sub.state is SubscriptionState.CLOSED
    assert bus.subscriptions == []


async def test_callback_errors_do_not_kill_the_subscription():
    channel = ScriptedChannel(["ok"])
    bus = _bus(channel, ScriptedPoller(), RecordingSleep())
    seen = []

    async def callback(update):
        seen.append(update["status"])
        if update["status"] == "crafting":
            raise RuntimeError("ui crashed")

    sub = bus.subscribe_order(9, callback)
    await wait_until(lambda: sub.state is SubscriptionState.PUSH_ACTIVE)
    channel.push({"status": "crafting"})
    channel.push({"status": "ready_for_pickup"})
    await wait_until(lambda: len(seen) == 2)
    assert sub.state is SubscriptionState.PUSH_ACTIVE
    await sub.unsubscribe()


async def test_unsubscribe_while_polling_returns_promptly():
    channel = ScriptedChannel()
    poller = ScriptedPoller()
    bus = RealtimeUpdateBus(
        channel, poller, policy=RetryPolicy(max_retries=1), sleep=RecordingSleep(), connect_timeout=0.01
    )
    sub = bus.subscribe_order(11, lambda update: None)
    await wait_until(lambda: sub.poll_count >= 50)

    await asyncio.wait_for(sub.unsubscribe(), timeout=2.0)

    assert sub._task.done()
    assert sub.state is SubscriptionState.CLOSED
    calls = poller.calls
    for _ in range(10):
        await asyncio.sleep(0)
    assert poller.calls == calls


async def test_unsubscribe_from_push_callback_ends_cleanly():
    channel = ScriptedChannel(["ok"])
    bus = _bus(channel, ScriptedPoller(), RecordingSleep())
    seen = []

    async def callback(update):
        seen.append(update["status"])
        if update["status"] == "delivered":
            await sub.unsubscribe()

    sub = bus.subscribe_order(12, callback)
    await wait_until(lambda: sub.state is SubscriptionState.PUSH_ACTIVE)
    channel.push({"status": "delivered"})
    channel.push({"status": "cancelled"})
    await wait_until(lambda: sub._task.done())

    assert not sub._task.cancelled()
    assert sub._task.exception() is None
    assert seen == ["delivered"]
    assert sub.state is SubscriptionState.CLOSED
    assert channel.handles[0].closed
    assert bus.subscriptions == []


async def test_unsubscribe_from_poll_callback_stops_polling():
    poller = ScriptedPoller()
    poller.vendor_rows["vendor-1"] = [OrderSnapshot(1, "delivered"), OrderSnapshot(2, "crafting")]
    bus = _bus(ScriptedChannel(), poller, RecordingSleep())
    seen = []

    async def callback(update):
        seen.append(update["order_id"])
        await sub.unsubscribe()

    sub = bus.subscribe_vendor_orders("vendor-1", callback)
    await wait_until(lambda: sub._task.done())

    assert sub._task.exception() is None
    assert seen == [1]
    assert sub.poll_count == 1
