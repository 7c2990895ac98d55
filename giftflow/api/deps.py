# giftflow/api/deps.py
"""
服务装配 + FastAPI 依赖

协作方（支付网关 / 配送服务商 / 推送中心）在启动时按配置构造一次，
挂在 app.state.services 上注入，不使用模块级单例客户端。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftflow.adapters.delivery_client import DeliveryPartnerClient
from giftflow.adapters.payment_gateway import DevPaymentGateway, PaymentGateway, RazorpayGateway
from giftflow.core.config import AppSettings
from giftflow.core.errors import AuthenticationError
from giftflow.core.security import Actor, decode_access_token
from giftflow.realtime.hub import StatusHub
from giftflow.services.order_lifecycle import OrderLifecycleManager
from giftflow.services.settlement_engine import SettlementEngine
from giftflow.services.wallet_ledger import WalletLedger

log = logging.getLogger("giftflow")


@dataclass
class Services:
    settings: AppSettings
    session_factory: async_sessionmaker[AsyncSession]
    hub: StatusHub
    gateway: PaymentGateway
    ledger: WalletLedger
    settlement: SettlementEngine
    orders: OrderLifecycleManager
    delivery: Optional[DeliveryPartnerClient] = None


def build_gateway(settings: AppSettings) -> PaymentGateway:
    if settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET:
        return RazorpayGateway(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            base_url=settings.RAZORPAY_BASE_URL,
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
    if settings.is_dev:
        log.warning("payment gateway keys not set; using the dev gateway (payments auto-captured)")
        return DevPaymentGateway()
    raise RuntimeError(
        "Payment gateway is not configured: set RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET "
        f"(ENV={settings.ENV!r})"
    )


def build_delivery(settings: AppSettings) -> Optional[DeliveryPartnerClient]:
    if not settings.DELIVERY_BASE_URL:
        return None
    return DeliveryPartnerClient(
        base_url=settings.DELIVERY_BASE_URL,
        email=settings.DELIVERY_EMAIL,
        password=settings.DELIVERY_PASSWORD,
        timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
    )


def build_services(
    settings: AppSettings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    gateway: Optional[PaymentGateway] = None,
    delivery: Optional[DeliveryPartnerClient] = None,
    hub: Optional[StatusHub] = None,
) -> Services:
    gateway = gateway or build_gateway(settings)
    delivery = delivery or build_delivery(settings)
    hub = hub or StatusHub()
    ledger = WalletLedger()
    settlement = SettlementEngine(session_factory, gateway, ledger, settings)
    orders = OrderLifecycleManager(
        session_factory,
        settlement=settlement,
        ledger=ledger,
        gateway=gateway,
        settings=settings,
        events=hub,
        delivery=delivery,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        hub=hub,
        gateway=gateway,
        ledger=ledger,
        settlement=settlement,
        orders=orders,
        delivery=delivery,
    )


# ---------------------------
# FastAPI 依赖
# ---------------------------


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_manager(services: Services = Depends(get_services)) -> OrderLifecycleManager:
    return services.orders


_bearer = HTTPBearer(auto_error=False)


async def get_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    services: Services = Depends(get_services),
) -> Actor:
    """
    必须带 Authorization: Bearer <token>；token 无效 / 过期 → 401
    """
    if credentials is None or not (credentials.credentials or "").strip():
        raise AuthenticationError("Missing bearer token")
    return decode_access_token(credentials.credentials.strip(), settings=services.settings)
