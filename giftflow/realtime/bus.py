# giftflow/realtime/bus.py
"""
订阅端状态机（每个订阅一个 asyncio 任务）：

    connecting → push_active → (degrading) → polling

- 推送通道出错 / 超时 / 关闭：按 RetryPolicy 指数退避重连（1s, 2s, 4s, 8s, 16s ...）
- 首次连接 + max_retries 次重连都失败后永久降级为轮询（单订单 5s，商家订单列表 10s），
  不再尝试回到推送
- 成功连上推送后重试计数清零
- 回调只在“有效状态”与上次投递不同时触发（按订单去重），推送重复 / 轮询读到未变化的状态都被吞掉
- unsubscribe 幂等，可在首次连接完成前调用；会取消重连定时 / 轮询并释放通道
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Union

from giftflow.core.config import AppSettings
from giftflow.core.errors import GiftflowError
from giftflow.core.retry import RetryPolicy
from giftflow.domain.events import order_channel, vendor_channel
from giftflow.metrics import REALTIME_FALLBACKS
from giftflow.realtime.channel import ChannelError, PushChannel, PushHandle
from giftflow.realtime.pollers import OrderSnapshot, Poller

log = logging.getLogger("giftflow.realtime")

Callback = Callable[[Dict[str, Any]], Union[Awaitable[None], None]]
Sleep = Callable[[float], Awaitable[None]]

# 视为“通道失败”的异常；其它异常属于程序错误，直接冒泡
PUSH_ERRORS = (ChannelError, OSError, TimeoutError)

KIND_ORDER = "order"
KIND_VENDOR = "vendor"


class SubscriptionState(str, Enum):
    CONNECTING = "connecting"
    PUSH_ACTIVE = "push_active"
    DEGRADING = "degrading"
    POLLING = "polling"
    CLOSED = "closed"


class Subscription:
    def __init__(
        self,
        bus: "RealtimeUpdateBus",
        *,
        kind: str,
        entity_id: Union[int, str],
        key: str,
        callback: Callback,
        poll_interval: float,
    ) -> None:
        self.bus = bus
        self.kind = kind
        self.entity_id = entity_id
        self.key = key
        self.callback = callback
        self.poll_interval = poll_interval

        self.state = SubscriptionState.CONNECTING
        self.retry_attempt = 0
        self.connect_attempts = 0
        self.poll_count = 0
        # order_id(str) → 最近一次投递的状态
        self.last_delivered: Dict[str, str] = {}

        self._closed = False
        self._handle: Optional[PushHandle] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def mode(self) -> str:
        return "polling" if self.state is SubscriptionState.POLLING else "push"

    @property
    def last_delivered_status(self) -> Optional[str]:
        if self.kind == KIND_ORDER:
            return self.last_delivered.get(str(self.entity_id))
        return None

    @property
    def closed(self) -> bool:
        return self._closed

    def _start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"realtime:{self.key}")

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.bus._forget(self)

        task = self._task
        # 在自身回调里退订时不取消自己，循环看到 _closed 后自行退出
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._release()
        self.state = SubscriptionState.CLOSED
        log.debug("subscription %s closed", self.key)

    # ---------- 主循环 ----------

    async def _run(self) -> None:
        try:
            if await self._push_phase():
                await self._poll_phase()
        finally:
            await self._release()
            self.state = SubscriptionState.CLOSED

    async def _push_phase(self) -> bool:
        """返回 True 表示重试耗尽，需要降级为轮询。"""
        policy = self.bus.policy
        failures = 0
        while not self._closed:
            self.state = SubscriptionState.CONNECTING if failures == 0 else SubscriptionState.DEGRADING
            self.connect_attempts += 1
            try:
                # asyncio.timeout 不会吞掉外部的 cancel（3.11 的 wait_for 会）
                async with asyncio.timeout(self.bus.connect_timeout):
                    handle = await self.bus.channel.connect(self.key)
                if self._closed:
                    await handle.close()
                    return False
                self._handle = handle
                self.state = SubscriptionState.PUSH_ACTIVE
                failures = 0
                self.retry_attempt = 0
                log.info("push channel %s active", self.key)
                while True:
                    message = await handle.receive()
                    update = self._from_push(message)
                    if update is not None:
                        await self._deliver(update)
                    # 回调里可能已经 unsubscribe
                    if self._closed:
                        return False
            except PUSH_ERRORS as exc:
                failures += 1
                self.retry_attempt = failures
                await self._release()
                if policy.exhausted(failures - 1):
                    log.warning(
                        "push channel %s failed %d times (%s); falling back to %ss polling",
                        self.key,
                        failures,
                        exc.__class__.__name__,
                        self.poll_interval,
                    )
                    return True
                delay = policy.delay_for(failures - 1)
                self.state = SubscriptionState.DEGRADING
                log.info(
                    "push channel %s error (%s), reconnecting in %ss (attempt %d/%d)",
                    self.key,
                    exc.__class__.__name__,
                    delay,
                    failures,
                    policy.max_retries,
                )
                await self.bus.sleep(delay)
        return False

    async def _poll_phase(self) -> None:
        self.state = SubscriptionState.POLLING
        REALTIME_FALLBACKS.labels(self.kind).inc()
        while not self._closed:
            self.poll_count += 1
            try:
                async with asyncio.timeout(self.bus.connect_timeout):
                    snapshots = await self._poll_once()
            except (GiftflowError, TimeoutError) as exc:
                log.warning("polling %s failed: %s", self.key, exc)
            else:
                for snap in snapshots:
                    await self._deliver(self._from_snapshot(snap))
                    if self._closed:
                        return
            await self.bus.sleep(self.poll_interval)

    async def _poll_once(self) -> List[OrderSnapshot]:
        if self.kind == KIND_ORDER:
            return [await self.bus.poller.order(int(self.entity_id))]
        return await self.bus.poller.vendor_orders(str(self.entity_id))

    # ---------- 投递 ----------

    def _from_push(self, message: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        status = message.get("status")
        if not status:
            log.debug("ignoring push message without status on %s: %r", self.key, message)
            return None
        update = dict(message)
        if self.kind == KIND_ORDER:
            update["order_id"] = self.entity_id
        elif update.get("order_id") is None:
            return None
        update["source"] = "push"
        return update

    def _from_snapshot(self, snap: OrderSnapshot) -> Dict[str, Any]:
        if self.kind == KIND_ORDER:
            return {
                "order_id": snap.order_id,
                "status": snap.status,
                "sub_status": snap.sub_status,
                "updated_at": snap.updated_at,
                "source": "poll",
            }
        return {
            "order_id": snap.order_id,
            "status": snap.status,
            "action": "status_changed",
            "source": "poll",
        }

    async def _deliver(self, update: Dict[str, Any]) -> bool:
        entity = str(update["order_id"])
        status = str(update["status"])
        if self.last_delivered.get(entity) == status:
            return False
        self.last_delivered[entity] = status
        try:
            result = self.callback(update)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # 订阅方回调出错不影响订阅本身
            log.exception("subscriber callback for %s failed", self.key)
        return True

    async def _release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await handle.close()
        except PUSH_ERRORS as exc:
            log.debug("closing channel %s failed: %s", self.key, exc)


class RealtimeUpdateBus:
    def __init__(
        self,
        channel: PushChannel,
        poller: Poller,
        *,
        policy: Optional[RetryPolicy] = None,
        order_poll_interval: float = 5.0,
        vendor_poll_interval: float = 10.0,
        connect_timeout: float = 10.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.channel = channel
        self.poller = poller
        self.policy = policy or RetryPolicy()
        self.order_poll_interval = order_poll_interval
        self.vendor_poll_interval = vendor_poll_interval
        self.connect_timeout = connect_timeout
        self.sleep = sleep
        self._subs: Set[Subscription] = set()

    @classmethod
    def from_settings(
        cls,
        channel: PushChannel,
        poller: Poller,
        settings: AppSettings,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> "RealtimeUpdateBus":
        return cls(
            channel,
            poller,
            policy=RetryPolicy.realtime(settings),
            order_poll_interval=settings.REALTIME_ORDER_POLL_SECONDS,
            vendor_poll_interval=settings.REALTIME_VENDOR_POLL_SECONDS,
            connect_timeout=settings.REALTIME_CONNECT_TIMEOUT_SECONDS,
            sleep=sleep,
        )

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subs)

    def subscribe_order(self, order_id: int, callback: Callback) -> Subscription:
        return self._subscribe(
            Subscription(
                self,
                kind=KIND_ORDER,
                entity_id=order_id,
                key=order_channel(order_id),
                callback=callback,
                poll_interval=self.order_poll_interval,
            )
        )

    def subscribe_vendor_orders(self, vendor_id: str, callback: Callback) -> Subscription:
        return self._subscribe(
            Subscription(
                self,
                kind=KIND_VENDOR,
                entity_id=vendor_id,
                key=vendor_channel(vendor_id),
                callback=callback,
                poll_interval=self.vendor_poll_interval,
            )
        )

    async def close(self) -> None:
        for sub in list(self._subs):
            await sub.unsubscribe()

    def _subscribe(self, sub: Subscription) -> Subscription:
        self._subs.add(sub)
        sub._start()
        return sub

    def _forget(self, sub: Subscription) -> None:
        self._subs.discard(sub)
