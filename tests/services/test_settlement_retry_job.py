# tests/services/test_settlement_retry_job.py
from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from giftflow.jobs.settlement_retry import run_once
from tests.fakes import ADMIN
from tests.services._helpers import pay, place_order


async def test_run_once_retries_failed_settlements(services, manager, gateway, payout_account):
    settlement = services.settlement
    first = await place_order(manager)
    second = await place_order(manager)

    gateway.transfer_failures = 100
    a = await settlement.split_payment(first.id, "pay_a", 95400, Decimal("18"), payout_account)
    b = await settlement.split_payment(second.id, "pay_b", 10000, Decimal("18"), payout_account)
    assert (a.status, b.status) == ("failed", "failed")

    # 第一条补偿成功，第二条继续失败
    gateway.transfer_failures = 0
    original = gateway.transfer

    async def flaky_transfer(**kwargs):
        if kwargs["payment_id"] == "pay_b":
            gateway.transfer_failures = 1
        return await original(**kwargs)

    gateway.transfer = flaky_transfer

    summary = await run_once(settlement, services.settings)

    assert (summary.scanned, summary.processed, summary.errors) == (2, 1, 0)
    assert summary.still_failed == 1
    records = {r.payment_id: r for r in await settlement.failed_records(max_attempts=100)}
    assert set(records) == {"pay_b"}


async def test_run_once_skips_records_over_the_attempt_cap(services, manager, gateway, payout_account):
    settlement = services.settlement
    order = await place_order(manager)
    gateway.transfer_failures = 100
    await settlement.split_payment(order.id, "pay_a", 95400, Decimal("18"), payout_account)

    services.settings.SETTLEMENT_RETRY_MAX_ATTEMPTS = 3
    summary = await run_once(settlement, services.settings)

    assert summary.scanned == 0


async def test_run_once_recovers_settlement_interrupted_mid_transfer(
    services, manager, gateway, payout_account
):
    order = await place_order(manager)
    original = gateway.transfer

    async def interrupted(**kwargs):
        gateway.transfer = original
        raise asyncio.CancelledError()

    gateway.transfer = interrupted
    with pytest.raises(asyncio.CancelledError):
        await pay(manager, gateway, order)
    assert (await manager.get_order(order.id, actor=ADMIN)).payment_status == "captured"

    # 租约内：补偿任务不碰正在认领中的记录
    assert (await run_once(services.settlement, services.settings)).scanned == 0

    services.settings.SETTLEMENT_CLAIM_LEASE_SECONDS = 0
    summary = await run_once(services.settlement, services.settings)

    assert (summary.scanned, summary.processed) == (1, 1)
    (record,) = await services.settlement.settlements_for_order(order.id)
    assert record.status == "processed"
    assert gateway.transfers == [{"payment_id": "pay_1", "account_id": "acc_vendor_1", "amount_minor": 86428}]
