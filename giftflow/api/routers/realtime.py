# giftflow/api/routers/realtime.py
"""
WS /ws/{channel_key}?token=...

channel_key:
- order:{order_id}          订单双方 / 运营
- vendor:{vendor_id}:orders 商家本人 / 运营

连上后先推一条当前状态快照（仅订单通道），之后把 StatusHub 的消息原样转发。
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from giftflow.api.deps import Services
from giftflow.core.errors import AuthenticationError, AuthorizationError, GiftflowError
from giftflow.core.security import Actor, decode_access_token
from giftflow.realtime.channel import ChannelClosed

log = logging.getLogger("giftflow.realtime")

router = APIRouter(tags=["realtime"])

_ORDER_KEY = re.compile(r"^order:(\d+)$")
_VENDOR_KEY = re.compile(r"^vendor:([^:]+):orders$")

WS_UNAUTHORIZED = 4401
WS_FORBIDDEN = 4403
WS_NOT_FOUND = 4404


def _token_from(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    auth = websocket.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


async def _authorize(services: Services, actor: Actor, channel_key: str) -> Optional[dict]:
    """返回订单通道的初始快照；无权限时抛 AuthorizationError。"""
    m = _ORDER_KEY.match(channel_key)
    if m:
        order = await services.orders.get_order(int(m.group(1)), actor=actor)
        return {
            "order_id": order.id,
            "status": order.status,
            "sub_status": order.sub_status,
            "updated_at": order.updated_at.isoformat() if order.updated_at else None,
        }
    m = _VENDOR_KEY.match(channel_key)
    if m:
        if not actor.is_privileged and actor.user_id != m.group(1):
            raise AuthorizationError("You can only watch your own orders")
        return None
    raise AuthorizationError(f"Unknown channel {channel_key!r}")


@router.websocket("/ws/{channel_key}")
async def status_stream(websocket: WebSocket, channel_key: str) -> None:
    services: Services = websocket.app.state.services

    token = _token_from(websocket)
    try:
        if not token:
            raise AuthenticationError("Missing token")
        actor = decode_access_token(token, settings=services.settings)
        snapshot = await _authorize(services, actor, channel_key)
    except AuthenticationError:
        await websocket.close(code=WS_UNAUTHORIZED)
        return
    except AuthorizationError:
        await websocket.close(code=WS_FORBIDDEN)
        return
    except GiftflowError as exc:
        log.info("ws %s rejected: %s", channel_key, exc)
        await websocket.close(code=WS_NOT_FOUND)
        return

    await websocket.accept()
    channel = services.hub.open(channel_key)
    log.info("ws %s opened by %s", channel_key, actor.user_id)

    async def pump() -> None:
        if snapshot is not None:
            await websocket.send_json(snapshot)
        while True:
            await websocket.send_json(await channel.receive())

    async def drain() -> None:
        # 客户端不需要发消息；读循环只用来感知断开
        while True:
            await websocket.receive_text()

    tasks = {asyncio.create_task(pump()), asyncio.create_task(drain())}
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if isinstance(exc, ChannelClosed):
                await websocket.close(code=status.WS_1001_GOING_AWAY)
            elif exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    finally:
        # 处理函数自身被取消时也要回收两个子任务；这里不能再 await，外层取消会反复投递
        for task in tasks:
            task.add_done_callback(_reap)
            task.cancel()
        await channel.close()
        log.info("ws %s closed", channel_key)


def _reap(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, (WebSocketDisconnect, ChannelClosed)):
        log.warning("ws task %s failed: %r", task.get_name(), exc)
