# giftflow/jobs/settlement_retry.py
"""
分账补偿任务

目标：
  - 扫描 settlement_records：status=failed，或租约过期仍停在 created 的（attempts < SETTLEMENT_RETRY_MAX_ATTEMPTS）
  - 逐条 retry_settlement；并发安全靠 → created 的条件 UPDATE 抢占（同时刷新租约）
  - 单条失败不影响其它记录

用法：
  - python -m giftflow.jobs.settlement_retry [--limit 50]
  - 也可由 scheduler 定期调用 run_once()
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from giftflow.api.deps import build_gateway
from giftflow.core.config import AppSettings, get_settings
from giftflow.core.errors import GiftflowError
from giftflow.core.logging import setup_logging
from giftflow.db.session import create_engine_for, make_session_factory
from giftflow.models.enums import SettlementStatus
from giftflow.services.settlement_engine import SettlementEngine
from giftflow.services.wallet_ledger import WalletLedger

log = logging.getLogger("giftflow.jobs")


@dataclass
class RetrySummary:
    scanned: int = 0
    processed: int = 0
    still_failed: int = 0
    errors: int = 0


async def run_once(engine: SettlementEngine, settings: AppSettings, *, limit: int = 50) -> RetrySummary:
    summary = RetrySummary()
    records = await engine.failed_records(max_attempts=settings.SETTLEMENT_RETRY_MAX_ATTEMPTS, limit=limit)
    for record in records:
        summary.scanned += 1
        try:
            result = await engine.retry_settlement(record.id)
        except (GiftflowError, SQLAlchemyError):
            summary.errors += 1
            log.exception("retry of settlement %s (order %s) crashed", record.id, record.order_id)
            continue
        if result.status == SettlementStatus.PROCESSED.value:
            summary.processed += 1
        else:
            summary.still_failed += 1
    if summary.scanned:
        log.info(
            "settlement retry: scanned=%d processed=%d still_failed=%d errors=%d",
            summary.scanned,
            summary.processed,
            summary.still_failed,
            summary.errors,
        )
    return summary


async def main(limit: int = 50) -> RetrySummary:
    """独立运行：自建引擎（NullPool），跑一轮后释放。"""
    settings = get_settings()
    db = create_engine_for(settings.DATABASE_URL, echo=settings.SQL_ECHO, poolclass=NullPool)
    try:
        engine = SettlementEngine(
            make_session_factory(db), build_gateway(settings), WalletLedger(), settings
        )
        return await run_once(engine, settings, limit=limit)
    finally:
        await db.dispose()


def run_cli() -> None:
    ap = argparse.ArgumentParser(description="Retry failed vendor settlements")
    ap.add_argument("--limit", type=int, default=50, help="max records per run")
    args = ap.parse_args()

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)
    summary = asyncio.run(main(limit=args.limit))
    print(
        f"[SettlementRetry] scanned={summary.scanned} processed={summary.processed} "
        f"still_failed={summary.still_failed} errors={summary.errors}"
    )


if __name__ == "__main__":
    run_cli()
