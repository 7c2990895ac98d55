# giftflow/models/order.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, List

from sqlalchemy import JSON, DateTime, Index, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from giftflow.db.base import Base
from giftflow.models.enums import OrderStatus, PaymentStatus

if TYPE_CHECKING:
    from giftflow.models.order_item import OrderItem


class Order(Base):
    """
    订单主档
    - 金额列一律 Numeric(12,2)（卢比，两位小数）；与支付网关交互时再换算成分（paise）
    - total == item_total + delivery_fee + platform_fee - cashback_used，写入前校验
    - 只由 OrderLifecycleManager 修改；状态迁移走条件 UPDATE（WHERE status = 当前状态）
    """

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_vendor_status", "vendor_id", "status"),
        Index("ix_orders_customer_created", "customer_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # 人类可读单号：WK + 数字
    order_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)

    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    item_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    cashback_used: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    delivery_type: Mapped[str] = mapped_column(String(16), nullable=False)
    delivery_address: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=OrderStatus.PENDING.value, index=True
    )
    # 子状态：自由文本（例如 "awb:123456"、"mockup revision requested"）
    sub_status: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # 支付：payment_ref = 网关侧订单号；payment_id = 实际捕获的支付单号
    payment_ref: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PaymentStatus.PENDING.value
    )

    # 效果图 / 修改意见（按商品 id 存放）
    mockup_images: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    revision_request: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="OrderItem.id",
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id} no={self.order_number!r} status={self.status}>"
