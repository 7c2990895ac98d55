# giftflow/realtime/pollers.py
"""
轮询兜底的数据源：
- SessionOrderPoller  同进程直接查库
- HttpOrderPoller     远端客户端走 GET /orders/{id} 与 GET /vendors/{id}/orders
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftflow.core.errors import DownstreamUnavailableError, OrderNotFoundError, StorageError
from giftflow.models.order import Order

VENDOR_POLL_LIMIT = 100


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: int
    status: str
    sub_status: Optional[str] = None
    updated_at: Optional[str] = None


class Poller(Protocol):
    async def order(self, order_id: int) -> OrderSnapshot: ...

    async def vendor_orders(self, vendor_id: str) -> List[OrderSnapshot]: ...


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SessionOrderPoller:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def order(self, order_id: int) -> OrderSnapshot:
        try:
            async with self.session_factory() as session:
                row = (
                    await session.execute(
                        select(Order.id, Order.status, Order.sub_status, Order.updated_at).where(
                            Order.id == order_id
                        )
                    )
                ).first()
        except SQLAlchemyError as exc:
            raise StorageError(f"Polling order {order_id} failed") from exc
        if row is None:
            raise OrderNotFoundError(order_id)
        return OrderSnapshot(row.id, row.status, row.sub_status, _iso(row.updated_at))

    async def vendor_orders(self, vendor_id: str) -> List[OrderSnapshot]:
        try:
            async with self.session_factory() as session:
                rows = (
                    await session.execute(
                        select(Order.id, Order.status, Order.sub_status, Order.updated_at)
                        .where(Order.vendor_id == vendor_id)
                        .order_by(Order.id.desc())
                        .limit(VENDOR_POLL_LIMIT)
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StorageError(f"Polling orders of vendor {vendor_id} failed") from exc
        return [OrderSnapshot(r.id, r.status, r.sub_status, _iso(r.updated_at)) for r in rows]


class HttpOrderPoller:
    COLLABORATOR = "giftflow_api"

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client

    async def order(self, order_id: int) -> OrderSnapshot:
        path = f"/orders/{order_id}"
        data = await self._get(path)
        with self._malformed(path):
            return _snapshot(data)

    async def vendor_orders(self, vendor_id: str) -> List[OrderSnapshot]:
        path = f"/vendors/{vendor_id}/orders"
        data = await self._get(path)
        with self._malformed(path):
            items = data.get("items", []) if isinstance(data, dict) else data
            return [_snapshot(item) for item in items]

    @contextmanager
    def _malformed(self, path: str) -> Iterator[None]:
        # 响应体缺字段 / 类型不对同样算下游不可用，由订阅端按轮询失败处理
        try:
            yield
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise DownstreamUnavailableError(
                self.COLLABORATOR, f"Polling {path} returned a malformed body: {exc!r}"
            ) from exc

    async def _get(self, path: str) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"}
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                resp = await self._client.get(url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DownstreamUnavailableError(
                self.COLLABORATOR,
                f"Polling {path} returned HTTP {exc.response.status_code}",
                upstream_status=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise DownstreamUnavailableError(
                self.COLLABORATOR, f"Polling {path} failed: {exc.__class__.__name__}"
            ) from exc
        with self._malformed(path):
            return resp.json()


def _snapshot(data: Dict[str, Any]) -> OrderSnapshot:
    order_id = data.get("order_id")
    if order_id is None:
        order_id = data["id"]
    status = data["status"]
    if not status:
        raise ValueError("empty status")
    return OrderSnapshot(
        order_id=int(order_id),
        status=str(status),
        sub_status=data.get("sub_status"),
        updated_at=data.get("updated_at"),
    )
