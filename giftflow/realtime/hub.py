# giftflow/realtime/hub.py
"""
进程内推送中心：StatusChanged → 按 channel key（order:{id} / vendor:{id}:orders）扇出到各订阅队列。

- WS /ws/{channel_key} 把队列转发给远端客户端
- HubPushChannel 让同进程的 RealtimeUpdateBus 直接消费
- 队列有界：慢消费者满了丢最旧的一条（消费侧按状态去重，丢中间态不影响最终状态）
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Mapping, Set

from giftflow.domain.events import StatusChanged
from giftflow.realtime.channel import ChannelClosed

log = logging.getLogger("giftflow.realtime")

_CLOSED = object()


class HubChannel:
    def __init__(self, hub: "StatusHub", key: str, maxsize: int):
        self.hub = hub
        self.key = key
        self.queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def offer(self, item: Any) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            log.warning("channel %s is lagging; dropped oldest message", self.key)
        self.queue.put_nowait(item)

    async def receive(self) -> Mapping[str, Any]:
        if self.closed:
            raise ChannelClosed(self.key)
        item = await self.queue.get()
        if item is _CLOSED:
            self.closed = True
            raise ChannelClosed(self.key)
        return item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.hub.detach(self)


class StatusHub:
    def __init__(self, *, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._channels: Dict[str, Set[HubChannel]] = defaultdict(set)

    def open(self, key: str) -> HubChannel:
        channel = HubChannel(self, key, self.max_queue)
        self._channels[key].add(channel)
        return channel

    def detach(self, channel: HubChannel) -> None:
        subs = self._channels.get(channel.key)
        if subs is None:
            return
        subs.discard(channel)
        if not subs:
            self._channels.pop(channel.key, None)

    def subscriber_count(self, key: str) -> int:
        return len(self._channels.get(key, ()))

    async def publish(self, event: StatusChanged) -> None:
        for key in event.channels():
            payload = event.payload_for(key)
            for channel in list(self._channels.get(key, ())):
                channel.offer(payload)

    def close_all(self) -> None:
        for subs in list(self._channels.values()):
            for channel in list(subs):
                channel.offer(_CLOSED)
        self._channels.clear()


class HubPushChannel:
    """PushChannel 实现：直接挂在进程内 StatusHub 上。"""

    def __init__(self, hub: StatusHub):
        self.hub = hub

    async def connect(self, key: str) -> HubChannel:
        return self.hub.open(key)
