# giftflow/adapters/token_provider.py
"""
外部服务 bearer token 缓存：并发调用方共享同一个进行中的刷新（in-flight future），
只会触发一次登录。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

log = logging.getLogger("giftflow.delivery")

# login() 返回 (token, 有效期秒数)
LoginFn = Callable[[], Awaitable[Tuple[str, float]]]


class TokenProvider:
    def __init__(
        self,
        login: LoginFn,
        *,
        refresh_margin: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._login = login
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._inflight: Optional[asyncio.Future[str]] = None

    @property
    def cached(self) -> Optional[str]:
        if self._token and self._expires_at - self._refresh_margin > self._clock():
            return self._token
        return None

    async def get_token(self) -> str:
        token = self.cached
        if token is not None:
            return token
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())
        # shield：单个调用方被取消不影响其它等待者
        return await asyncio.shield(self._inflight)

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def _refresh(self) -> str:
        try:
            token, expires_in = await self._login()
            self._token = token
            self._expires_at = self._clock() + float(expires_in)
            log.info("bearer token refreshed (expires in %ss)", expires_in)
            return token
        finally:
            self._inflight = None
