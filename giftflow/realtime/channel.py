# giftflow/realtime/channel.py
from __future__ import annotations

from typing import Any, Mapping, Protocol


class ChannelError(Exception):
    """推送通道层面的失败（连接失败 / 断开 / 协议错误）。"""


class ChannelClosed(ChannelError):
    """通道被对端关闭。"""


class PushHandle(Protocol):
    async def receive(self) -> Mapping[str, Any]: ...

    async def close(self) -> None: ...


class PushChannel(Protocol):
    async def connect(self, key: str) -> PushHandle: ...
