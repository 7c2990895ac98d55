# giftflow/models/wallet_transaction.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from giftflow.db.base import Base

# 同一订单最多一笔 credit：由存储层唯一索引裁决，插入冲突即“已入账”
CREDIT_PER_ORDER_INDEX = "uq_wallet_tx_credit_per_order"
CREDIT_PREDICATE = "type = 'credit'"


class WalletTransaction(Base):
    """钱包流水（只追加）。amount 恒为正数，方向由 type 决定。"""

    __tablename__ = "wallet_transactions"
    __table_args__ = (
        Index(
            CREDIT_PER_ORDER_INDEX,
            "wallet_id",
            "order_id",
            unique=True,
            postgresql_where=text(CREDIT_PREDICATE),
            sqlite_where=text(CREDIT_PREDICATE),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet_id: Mapped[int] = mapped_column(
        ForeignKey("wallet.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(8), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
