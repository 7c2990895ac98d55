# tests/conftest.py
from __future__ import annotations

from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from giftflow.api.deps import Services, build_services
from giftflow.core.config import AppSettings
from giftflow.core.security import Actor, create_access_token
from giftflow.db.base import Base, init_models
from giftflow.db.session import create_engine_for, make_session_factory
from giftflow.main import create_app
from giftflow.models.vendor_payout_account import VendorPayoutAccount
from giftflow.realtime.hub import StatusHub
from giftflow.services.order_lifecycle import OrderLifecycleManager
from tests.fakes import VENDOR, FakeGateway


# =========================================
# 配置：每用例独立 sqlite 文件库
# =========================================
@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(
        _env_file=None,
        ENV="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'giftflow.db'}",
        JWT_SECRET="test-jwt-secret",
        PLATFORM_FEE=Decimal("5"),
        COMMISSION_RATE_PERCENT=Decimal("18"),
        CASHBACK_RATE_PERCENT=Decimal("10"),
        CASHBACK_MAX_USAGE_RATIO=Decimal("0.5"),
        CASHBACK_MIN_ORDER_VALUE=Decimal("500"),
        COLLABORATOR_TIMEOUT_SECONDS=2.0,
        # 分账重试退避与推送共用曲线；测试里压到毫秒级
        REALTIME_INITIAL_DELAY_SECONDS=0.001,
        REALTIME_MAX_DELAY_SECONDS=0.005,
    )


@pytest_asyncio.fixture
async def engine(settings: AppSettings) -> AsyncGenerator[AsyncEngine, None]:
    init_models()
    eng = create_engine_for(settings.DATABASE_URL)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def hub() -> StatusHub:
    return StatusHub()


@pytest.fixture
def services(settings, session_factory, gateway, hub) -> Services:
    return build_services(settings, session_factory, gateway=gateway, hub=hub)


@pytest.fixture
def manager(services: Services) -> OrderLifecycleManager:
    return services.orders


@pytest_asyncio.fixture
async def payout_account(session_factory) -> str:
    async with session_factory() as session:
        async with session.begin():
            session.add(VendorPayoutAccount(vendor_id=VENDOR.user_id, route_account_id="acc_vendor_1"))
    return "acc_vendor_1"


# =========================================
# FastAPI / httpx AsyncClient
# =========================================
@pytest_asyncio.fixture
async def client(settings, services) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(settings, services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
        timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
    ) as c:
        yield c


@pytest.fixture
def auth(settings) -> Callable[[Actor], Dict[str, str]]:
    def _headers(actor: Actor) -> Dict[str, str]:
        token = create_access_token(actor.user_id, actor.role, settings=settings)
        return {"Authorization": f"Bearer {token}"}

    return _headers
