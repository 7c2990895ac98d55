# giftflow/services/wallet_ledger.py
"""
返现钱包账本

- 余额是流水的冗余汇总，只通过条件 UPDATE（balance = balance ± :amt）维护
- 同一订单最多一笔 credit：先插流水，由部分唯一索引
  (wallet_id, order_id) WHERE type='credit' 裁决；ON CONFLICT DO NOTHING 没返回 id
  即视为“已入账”，此时余额尚未改动
- 所有方法都在调用方的 session / 事务里执行，不自行提交
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow.core.errors import (
    AlreadyCreditedError,
    InsufficientBalanceError,
    StorageError,
    ValidationError,
)
from giftflow.db.dialect import conflict_insert
from giftflow.domain.money import as_money
from giftflow.models.enums import TransactionType
from giftflow.models.wallet import Wallet
from giftflow.models.wallet_transaction import CREDIT_PREDICATE, WalletTransaction

log = logging.getLogger("giftflow.wallet")


@dataclass(frozen=True)
class LedgerEntry:
    transaction_id: int
    wallet_id: int
    amount: Decimal
    balance_after: Decimal


class WalletLedger:
    async def get_or_create_wallet(self, session: AsyncSession, user_id: str) -> Wallet:
        wallet = await self.get_wallet(session, user_id)
        if wallet is not None:
            return wallet

        # 并发首次创建：user_id 唯一，输家什么也不插，随后统一再查一次
        stmt = (
            conflict_insert(session, Wallet)
            .values(user_id=user_id, balance=Decimal("0"))
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await session.execute(stmt)
        wallet = await self.get_wallet(session, user_id)
        if wallet is None:
            # 冲突后仍查不到：并发方回滚或被删，交给调用方重试
            raise StorageError(f"Wallet for user {user_id} could not be created")
        return wallet

    async def get_wallet(self, session: AsyncSession, user_id: str) -> Optional[Wallet]:
        res = await session.execute(
            select(Wallet)
            .where(Wallet.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def credit(
        self,
        session: AsyncSession,
        wallet_id: int,
        order_id: Optional[int],
        amount: Decimal,
        description: str,
    ) -> LedgerEntry:
        amt = _positive(amount)

        ins = (
            conflict_insert(session, WalletTransaction)
            .values(
                wallet_id=wallet_id,
                order_id=order_id,
                type=TransactionType.CREDIT.value,
                amount=amt,
                balance_after=Decimal("0"),
                description=description,
            )
            .on_conflict_do_nothing(
                index_elements=["wallet_id", "order_id"],
                index_where=text(CREDIT_PREDICATE),
            )
            .returning(WalletTransaction.id)
        )
        tx_id = (await session.execute(ins)).scalar_one_or_none()
        if tx_id is None:
            log.info("credit for order %s on wallet %s already recorded", order_id, wallet_id)
            raise AlreadyCreditedError(order_id)

        new_balance = await self._apply(
            session,
            update(Wallet)
            .where(Wallet.id == wallet_id)
            .values(balance=Wallet.balance + amt),
        )
        if new_balance is None:
            raise ValidationError(f"Wallet {wallet_id} does not exist")

        await self._stamp(session, tx_id, new_balance)
        log.info("wallet %s credited %s (order=%s) -> %s", wallet_id, amt, order_id, new_balance)
        return LedgerEntry(tx_id, wallet_id, amt, new_balance)

    async def debit(
        self,
        session: AsyncSession,
        wallet_id: int,
        amount: Decimal,
        description: str,
        *,
        order_id: Optional[int] = None,
    ) -> LedgerEntry:
        amt = _positive(amount)

        new_balance = await self._apply(
            session,
            update(Wallet)
            .where(Wallet.id == wallet_id, Wallet.balance >= amt)
            .values(balance=Wallet.balance - amt),
        )
        if new_balance is None:
            current = (
                await session.execute(select(Wallet.balance).where(Wallet.id == wallet_id))
            ).scalar_one_or_none()
            if current is None:
                raise InsufficientBalanceError(
                    "Wallet has no balance", context={"requested": str(amt), "balance": "0.00"}
                )
            raise InsufficientBalanceError(
                f"Insufficient wallet balance: requested {amt}, available {as_money(current)}",
                context={"requested": str(amt), "balance": str(as_money(current))},
            )

        res = await session.execute(
            insert(WalletTransaction)
            .values(
                wallet_id=wallet_id,
                order_id=order_id,
                type=TransactionType.DEBIT.value,
                amount=amt,
                balance_after=new_balance,
                description=description,
            )
            .returning(WalletTransaction.id)
        )
        tx_id = res.scalar_one()
        log.info("wallet %s debited %s (order=%s) -> %s", wallet_id, amt, order_id, new_balance)
        return LedgerEntry(tx_id, wallet_id, amt, new_balance)

    async def recent_transactions(
        self, session: AsyncSession, wallet_id: int, *, limit: int = 20
    ) -> List[WalletTransaction]:
        res = await session.execute(
            select(WalletTransaction)
            .where(WalletTransaction.wallet_id == wallet_id)
            .order_by(WalletTransaction.id.desc())
            .limit(limit)
        )
        return list(res.scalars())

    # ---------- 内部 ----------

    async def _apply(self, session: AsyncSession, stmt) -> Optional[Decimal]:
        res = await session.execute(
            stmt.returning(Wallet.balance).execution_options(synchronize_session=False)
        )
        value = res.scalar_one_or_none()
        return None if value is None else as_money(value)

    async def _stamp(self, session: AsyncSession, tx_id: int, balance_after: Decimal) -> None:
        await session.execute(
            update(WalletTransaction)
            .where(WalletTransaction.id == tx_id)
            .values(balance_after=balance_after)
            .execution_options(synchronize_session=False)
        )


def _positive(amount: Decimal) -> Decimal:
    amt = as_money(amount)
    if amt <= 0:
        raise ValidationError("Amount must be positive", context={"amount": str(amt)})
    return amt
