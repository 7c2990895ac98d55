# giftflow/adapters/delivery_client.py
"""
配送服务商客户端：只负责下单取运单号（路由 / 调度在服务商侧）。
401 时作废 token 重新登录并重试一次。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from giftflow.adapters.token_provider import TokenProvider
from giftflow.core.errors import DownstreamUnavailableError
from giftflow.metrics import COLLABORATOR_ERRORS

log = logging.getLogger("giftflow.delivery")

COLLABORATOR = "delivery_partner"
DEFAULT_TOKEN_TTL = 3600.0


@dataclass(frozen=True)
class Shipment:
    delivery_id: str
    partner_id: Optional[str]
    estimated_time: Optional[str]


class DeliveryPartnerClient:
    def __init__(
        self,
        *,
        base_url: str,
        email: str,
        password: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._email = email
        self._password = password
        self.timeout = timeout
        self._client = client
        self.tokens = TokenProvider(self._login)

    async def create_shipment(
        self,
        *,
        order_number: str,
        delivery_address: Mapping[str, Any],
        delivery_type: str,
        weight_kg: float = 0.5,
    ) -> Shipment:
        body = {
            "orderId": order_number,
            "delivery": dict(delivery_address),
            "type": delivery_type,
            "weight": weight_kg,
        }
        resp = await self._authorized("POST", "/deliveries", json=body)
        if resp.status_code == 401:
            log.warning("delivery partner rejected token, refreshing once")
            self.tokens.invalidate()
            resp = await self._authorized("POST", "/deliveries", json=body)
        data = self._json_or_raise(resp, "/deliveries")
        delivery_id = data.get("deliveryId") or data.get("awb") or data.get("id")
        if not delivery_id:
            raise DownstreamUnavailableError(
                COLLABORATOR, "Delivery partner response carried no delivery id", retryable=False
            )
        log.info("shipment %s booked for %s", delivery_id, order_number)
        return Shipment(
            delivery_id=str(delivery_id),
            partner_id=data.get("partnerId"),
            estimated_time=data.get("estimatedTime"),
        )

    # ---------- 内部 ----------

    async def _login(self) -> Tuple[str, float]:
        resp = await self._send(
            "POST", "/users/login", json={"email": self._email, "password": self._password}
        )
        data = self._json_or_raise(resp, "/users/login")
        nested = data.get("data") if isinstance(data.get("data"), dict) else {}
        token = data.get("token") or nested.get("token") or data.get("access_token")
        if not token:
            raise DownstreamUnavailableError(
                COLLABORATOR, "Delivery partner login returned no token", retryable=False
            )
        return str(token), float(data.get("expires_in") or DEFAULT_TOKEN_TTL)

    async def _authorized(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self.tokens.get_token()
        headers = {"Authorization": f"Bearer {token}"}
        return await self._send(method, path, headers=headers, **kwargs)

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                return await self._client.request(method, url, timeout=self.timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            COLLABORATOR_ERRORS.labels(COLLABORATOR).inc()
            raise DownstreamUnavailableError(COLLABORATOR, f"Delivery partner timed out on {path}") from exc
        except httpx.HTTPError as exc:
            COLLABORATOR_ERRORS.labels(COLLABORATOR).inc()
            raise DownstreamUnavailableError(
                COLLABORATOR, f"Delivery partner unreachable: {exc.__class__.__name__}"
            ) from exc

    def _json_or_raise(self, resp: httpx.Response, path: str) -> Dict[str, Any]:
        if resp.status_code >= 400:
            COLLABORATOR_ERRORS.labels(COLLABORATOR).inc()
            try:
                message = resp.json().get("message")
            except (ValueError, AttributeError):
                message = None
            raise DownstreamUnavailableError(
                COLLABORATOR,
                f"Delivery partner error on {path}: {message or f'HTTP {resp.status_code}'}",
                retryable=resp.status_code >= 500 or resp.status_code == 429,
                upstream_status=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise DownstreamUnavailableError(COLLABORATOR, "Delivery partner returned a non-JSON body") from exc
        return data if isinstance(data, dict) else {}
