# giftflow/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from giftflow import __version__
from giftflow.api.deps import Services, build_services
from giftflow.api.routers import cashback, health, orders, payment, realtime, vendor
from giftflow.core.config import AppSettings, get_settings
from giftflow.core.logging import setup_logging
from giftflow.core.scheduler import init_scheduler, shutdown_scheduler
from giftflow.core.security import check_secret
from giftflow.http_problem_handlers import register_exception_handlers
from giftflow.metrics import router as metrics_router

logger = logging.getLogger("giftflow")


def create_app(settings: Optional[AppSettings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    应用工厂：
    - services 未传入时按配置装配（真实网关 / 配送客户端 / 全局引擎）
    - 测试传入自建的 Services（临时 sqlite + 假网关）
    """
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)
        check_secret(settings)
        if getattr(app.state, "services", None) is None:
            from giftflow.db.session import AsyncSessionLocal

            app.state.services = build_services(settings, AsyncSessionLocal)
        svc: Services = app.state.services
        init_scheduler(svc)
        logger.info("giftflow %s started (env=%s)", __version__, settings.ENV)
        try:
            yield
        finally:
            shutdown_scheduler()
            svc.hub.close_all()
            if services is None:
                from giftflow.db.session import close_engines

                await close_engines()
            logger.info("giftflow stopped")

    app = FastAPI(title="GiftFlow", version=__version__, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(orders.router)
    app.include_router(vendor.router)
    app.include_router(payment.router)
    app.include_router(cashback.router)
    app.include_router(realtime.router)
    app.include_router(metrics_router)
    return app


app = create_app()
