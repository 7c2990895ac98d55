# giftflow/core/scheduler.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from giftflow.jobs.settlement_retry import run_once

if TYPE_CHECKING:
    from giftflow.api.deps import Services

log = logging.getLogger("giftflow.jobs")

_scheduler: AsyncIOScheduler | None = None


def init_scheduler(services: "Services") -> AsyncIOScheduler | None:
    """ENABLE_SETTLEMENT_RETRY_SCHEDULER=true 时按固定间隔补偿失败分账。"""
    global _scheduler
    settings = services.settings
    if not settings.ENABLE_SETTLEMENT_RETRY_SCHEDULER:
        return None

    async def _job_retry_settlements() -> None:
        await run_once(services.settlement, settings)

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        _job_retry_settlements,
        "interval",
        seconds=settings.SETTLEMENT_RETRY_INTERVAL_SECONDS,
        id="settlement_retry",
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    log.info("settlement retry scheduled every %ss", settings.SETTLEMENT_RETRY_INTERVAL_SECONDS)
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
