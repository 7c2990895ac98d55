# giftflow/api/routers/cashback.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from giftflow.api.deps import Services, get_actor, get_services
from giftflow.core.security import Actor
from giftflow.domain.money import as_money
from giftflow.schemas.wallet import (
    CashbackCreditIn,
    CashbackCreditOut,
    WalletOut,
    WalletTransactionOut,
)

router = APIRouter(tags=["wallet"])


@router.post("/cashback/credit", response_model=CashbackCreditOut)
async def credit_cashback(
    body: CashbackCreditIn,
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> CashbackCreditOut:
    """系统入口：订单签收后补发返现；同一订单重复调用 → 400 already_credited。"""
    credit = await services.orders.credit_cashback(body.order_id, actor=actor)
    return CashbackCreditOut(
        order_id=credit.order_id,
        amount_credited=credit.amount,
        new_balance=credit.new_balance,
    )


@router.get("/wallet", response_model=WalletOut)
async def my_wallet(
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    services: Services = Depends(get_services),
) -> WalletOut:
    ledger = services.ledger
    async with services.session_factory() as session:
        wallet = await ledger.get_wallet(session, actor.user_id)
        if wallet is None:
            return WalletOut(user_id=actor.user_id, balance=as_money(0), transactions=[])
        txs = await ledger.recent_transactions(session, wallet.id, limit=limit)
    return WalletOut(
        user_id=actor.user_id,
        balance=as_money(wallet.balance),
        transactions=[
            WalletTransactionOut(
                type=tx.type,
                amount=tx.amount,
                balance_after=tx.balance_after,
                order_id=tx.order_id,
                description=tx.description,
                created_at=tx.created_at,
            )
            for tx in txs
        ],
    )
