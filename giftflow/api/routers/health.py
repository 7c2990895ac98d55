# giftflow/api/routers/health.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text

from giftflow import __version__
from giftflow.api.deps import Services, get_services

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    """存活 + 数据库连通性；数据库不可用时由全局处理器转成 503。"""
    async with services.session_factory() as session:
        await session.execute(text("SELECT 1"))
    return {"ok": True, "version": __version__, "env": services.settings.ENV}
