# giftflow/models/settlement_record.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from giftflow.db.base import Base
from giftflow.models.enums import SettlementStatus

SETTLEMENT_UQ = "uq_settlement_order_payment"


class SettlementRecord(Base):
    """
    分账记录（每笔捕获的支付一条）
    - 金额为最小货币单位（paise）整数
    - platform_amount + vendor_amount == total_amount 与 status 无关，恒成立
    - 转账失败也落库（status=failed + 已算好的金额），供补偿任务重试
    """

    __tablename__ = "settlement_records"
    __table_args__ = (
        UniqueConstraint("order_id", "payment_id", name=SETTLEMENT_UQ),
        CheckConstraint("platform_amount + vendor_amount = total_amount", name="ck_settlement_split_sum"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    payment_id: Mapped[str] = mapped_column(String(64), nullable=False)

    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    platform_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    vendor_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    vendor_account_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    route_transfer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SettlementStatus.CREATED.value, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<SettlementRecord order={self.order_id} payment={self.payment_id!r} "
            f"status={self.status} platform={self.platform_amount} vendor={self.vendor_amount}>"
        )
