# giftflow/models/vendor_payout_account.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from giftflow.db.base import Base


class VendorPayoutAccount(Base):
    """商家收款账户（网关 Route 账户）+ 可选的佣金覆盖值。"""

    __tablename__ = "vendor_payout_accounts"

    vendor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    route_account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    commission_rate_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
