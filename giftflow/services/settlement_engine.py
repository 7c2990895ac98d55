# giftflow/services/settlement_engine.py
"""
分账 + 返现

split_payment：
  - 以 (order_id, payment_id) 唯一约束认领分账记录，认领到的一方才发起转账；
    重复调用（重复回调 / 并发确认）直接返回已有记录，不会二次转账
  - platform = round_half_up(total * rate / 100)，vendor = total - platform
  - 转账带超时 + 指数退避重试；最终失败时记录 status=failed 和已算好的金额，
    不回滚订单状态，由补偿任务（jobs.settlement_retry）继续重试
  - 认领后转账中途退出的记录停在 created；超过 SETTLEMENT_CLAIM_LEASE_SECONDS
    后可被重放或补偿任务重新认领

credit_cashback：
  - amount = round_half_up(order_total * rate / 100, 2)
  - 至多一次由 WalletLedger 的唯一索引保证；重复时抛 AlreadyCreditedError
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from giftflow.adapters.payment_gateway import PaymentGateway
from giftflow.core.config import AppSettings
from giftflow.core.errors import AlreadyCreditedError, DownstreamUnavailableError
from giftflow.core.retry import RetryPolicy
from giftflow.db.dialect import conflict_insert
from giftflow.domain.events import utcnow
from giftflow.domain.money import cashback_amount, split_amounts
from giftflow.metrics import CASHBACK_CREDITS, SETTLEMENTS
from giftflow.models.enums import SettlementStatus
from giftflow.models.order import Order
from giftflow.models.settlement_record import SETTLEMENT_UQ, SettlementRecord
from giftflow.models.vendor_payout_account import VendorPayoutAccount
from giftflow.services.wallet_ledger import WalletLedger

log = logging.getLogger("giftflow.settlement")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class CashbackCredit:
    order_id: int
    amount: Decimal
    new_balance: Decimal


class SettlementEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        ledger: WalletLedger,
        settings: AppSettings,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.ledger = ledger
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy.settlement(settings)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # 分账
    # ------------------------------------------------------------------

    async def payout_terms(self, vendor_id: str) -> Tuple[Optional[str], Decimal]:
        """商家收款账户 + 佣金（无覆盖值时用全局默认）。"""
        async with self.session_factory() as session:
            row = await session.get(VendorPayoutAccount, vendor_id)
        if row is None:
            return None, Decimal(self.settings.COMMISSION_RATE_PERCENT)
        rate = row.commission_rate_percent
        return row.route_account_id, Decimal(rate if rate is not None else self.settings.COMMISSION_RATE_PERCENT)

    async def split_payment(
        self,
        order_id: int,
        payment_id: str,
        total_amount_minor: int,
        commission_rate_percent: Decimal,
        vendor_account_ref: Optional[str],
    ) -> SettlementRecord:
        platform_amount, vendor_amount = split_amounts(total_amount_minor, commission_rate_percent)

        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    conflict_insert(session, SettlementRecord)
                    .values(
                        order_id=order_id,
                        payment_id=payment_id,
                        total_amount=int(total_amount_minor),
                        commission_rate=Decimal(str(commission_rate_percent)),
                        platform_amount=platform_amount,
                        vendor_amount=vendor_amount,
                        vendor_account_ref=vendor_account_ref,
                        status=SettlementStatus.CREATED.value,
                        attempts=0,
                        updated_at=utcnow(),
                    )
                    .on_conflict_do_nothing(index_elements=["order_id", "payment_id"])
                    .returning(SettlementRecord.id)
                )
                record_id = (await session.execute(stmt)).scalar_one_or_none()

            if record_id is None:
                # 已被其它调用认领（幂等命中）
                existing = await self._load(session, order_id=order_id, payment_id=payment_id)
                log.info(
                    "settlement for order %s payment %s already exists (%s, constraint %s)",
                    order_id,
                    payment_id,
                    existing.status,
                    SETTLEMENT_UQ,
                )
                if existing.status != SettlementStatus.CREATED.value:
                    return existing
                # 认领方在转账中途退出：租约过期后由重放接手
                if not await self._claim(existing.id, statuses=(SettlementStatus.CREATED,)):
                    return existing
                log.warning("taking over stale settlement %s for order %s", existing.id, order_id)
                return await self._run_transfer(existing.id)

        log.info(
            "settlement claimed: order=%s payment=%s total=%s platform=%s vendor=%s",
            order_id,
            payment_id,
            total_amount_minor,
            platform_amount,
            vendor_amount,
        )
        return await self._run_transfer(record_id)

    async def retry_settlement(self, record_id: int) -> SettlementRecord:
        """
        补偿任务入口：重试 failed 记录，以及租约已过期仍停在 created 的记录；
        金额沿用记录里已算好的值。
        """
        if not await self._claim(record_id, statuses=(SettlementStatus.FAILED, SettlementStatus.CREATED)):
            async with self.session_factory() as session:
                return await self._load(session, record_id=record_id)
        return await self._run_transfer(record_id)

    def _stale_before(self) -> datetime:
        return utcnow() - timedelta(seconds=self.settings.SETTLEMENT_CLAIM_LEASE_SECONDS)

    def _claimable(self, statuses: Iterable[SettlementStatus]):
        conds = []
        for status in statuses:
            if status is SettlementStatus.CREATED:
                conds.append(
                    and_(
                        SettlementRecord.status == SettlementStatus.CREATED.value,
                        SettlementRecord.updated_at < self._stale_before(),
                    )
                )
            else:
                conds.append(SettlementRecord.status == status.value)
        return or_(*conds)

    async def _claim(self, record_id: int, *, statuses: Iterable[SettlementStatus]) -> bool:
        """条件 UPDATE 抢占记录（→ created，刷新租约）；抢到返回 True。"""
        async with self.session_factory() as session:
            async with session.begin():
                res = await session.execute(
                    update(SettlementRecord)
                    .where(SettlementRecord.id == record_id, self._claimable(statuses))
                    .values(status=SettlementStatus.CREATED.value, updated_at=utcnow())
                    .returning(SettlementRecord.id)
                    .execution_options(synchronize_session=False)
                )
                return res.scalar_one_or_none() is not None

    async def _run_transfer(self, record_id: int) -> SettlementRecord:
        async with self.session_factory() as session:
            record = await self._load(session, record_id=record_id)

        # 收款账户可能在首次失败后才配置好，重试时再查一次
        account = record.vendor_account_ref
        if not account:
            account = await self._account_for_order(record.order_id)

        attempts = 0
        transfer_id: Optional[str] = None
        error: Optional[str] = None

        if not account:
            # 也算一次尝试，补偿任务的次数上限才会生效
            attempts = 1
            error = "vendor payout account is not configured"
        else:
            transfer_id, attempts, error = await self._transfer_with_retry(record, account)

        status = SettlementStatus.PROCESSED if transfer_id else SettlementStatus.FAILED
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(SettlementRecord)
                    .where(SettlementRecord.id == record_id)
                    .values(
                        status=status.value,
                        route_transfer_id=transfer_id,
                        vendor_account_ref=account,
                        attempts=SettlementRecord.attempts + attempts,
                        last_error=error,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
            record = await self._load(session, record_id=record_id)

        SETTLEMENTS.labels(status.value).inc()
        if status is SettlementStatus.FAILED:
            log.error(
                "settlement FAILED for order %s payment %s (vendor_amount=%s): %s",
                record.order_id,
                record.payment_id,
                record.vendor_amount,
                error,
            )
        else:
            log.info("settlement processed for order %s transfer=%s", record.order_id, transfer_id)
        return record

    async def _transfer_with_retry(
        self, record: SettlementRecord, account: str
    ) -> Tuple[Optional[str], int, Optional[str]]:
        """返回 (transfer_id | None, 实际尝试次数, 最后一次错误)。"""
        policy = self.retry_policy
        timeout = self.settings.COLLABORATOR_TIMEOUT_SECONDS
        attempt = 0
        last_error: Optional[str] = None
        while True:
            try:
                async with asyncio.timeout(timeout):
                    result = await self.gateway.transfer(
                        payment_id=record.payment_id,
                        account_id=account,
                        amount_minor=record.vendor_amount,
                        currency=self.settings.CURRENCY,
                        notes={"order_id": str(record.order_id), "type": "vendor_payment"},
                    )
                return result.id, attempt + 1, None
            except TimeoutError:
                last_error = f"transfer timed out after {timeout}s"
                retryable = True
            except DownstreamUnavailableError as exc:
                last_error = exc.message
                retryable = exc.retryable

            log.warning(
                "transfer attempt %d for order %s failed: %s", attempt + 1, record.order_id, last_error
            )
            if not retryable or policy.exhausted(attempt):
                return None, attempt + 1, last_error
            await self._sleep(policy.delay_for(attempt))
            attempt += 1

    async def _account_for_order(self, order_id: int) -> Optional[str]:
        async with self.session_factory() as session:
            vendor_id = (
                await session.execute(select(Order.vendor_id).where(Order.id == order_id))
            ).scalar_one_or_none()
        if vendor_id is None:
            return None
        account, _ = await self.payout_terms(vendor_id)
        return account

    async def _load(
        self,
        session: AsyncSession,
        *,
        record_id: Optional[int] = None,
        order_id: Optional[int] = None,
        payment_id: Optional[str] = None,
    ) -> SettlementRecord:
        stmt = select(SettlementRecord).execution_options(populate_existing=True)
        if record_id is not None:
            stmt = stmt.where(SettlementRecord.id == record_id)
        else:
            stmt = stmt.where(
                SettlementRecord.order_id == order_id, SettlementRecord.payment_id == payment_id
            )
        return (await session.execute(stmt)).scalar_one()

    async def failed_records(self, *, max_attempts: int, limit: int = 50) -> list[SettlementRecord]:
        """待补偿的记录：failed，加上租约过期仍停在 created 的。"""
        async with self.session_factory() as session:
            res = await session.execute(
                select(SettlementRecord)
                .where(
                    self._claimable((SettlementStatus.FAILED, SettlementStatus.CREATED)),
                    SettlementRecord.attempts < max_attempts,
                )
                .order_by(SettlementRecord.id)
                .limit(limit)
            )
            return list(res.scalars())

    async def settlements_for_order(self, order_id: int) -> list[SettlementRecord]:
        async with self.session_factory() as session:
            res = await session.execute(
                select(SettlementRecord)
                .where(SettlementRecord.order_id == order_id)
                .order_by(SettlementRecord.id)
            )
            return list(res.scalars())

    # ------------------------------------------------------------------
    # 返现
    # ------------------------------------------------------------------

    async def credit_cashback(
        self,
        order_id: int,
        order_total: Decimal,
        customer_id: str,
        rate_percent: Optional[Decimal] = None,
    ) -> CashbackCredit:
        rate = Decimal(rate_percent if rate_percent is not None else self.settings.CASHBACK_RATE_PERCENT)
        amount = cashback_amount(order_total, rate)

        async with self.session_factory() as session:
            try:
                async with session.begin():
                    wallet = await self.ledger.get_or_create_wallet(session, customer_id)
                    if amount <= 0:
                        log.info("order %s earns no cashback (total=%s)", order_id, order_total)
                        return CashbackCredit(order_id, amount, wallet.balance)
                    entry = await self.ledger.credit(
                        session,
                        wallet.id,
                        order_id,
                        amount,
                        f"Cashback for order {order_id}",
                    )
            except AlreadyCreditedError:
                CASHBACK_CREDITS.labels("already_credited").inc()
                raise

        CASHBACK_CREDITS.labels("credited").inc()
        log.info("cashback %s credited to %s for order %s", amount, customer_id, order_id)
        return CashbackCredit(order_id, amount, entry.balance_after)
