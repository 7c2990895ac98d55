# giftflow/domain/events.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from giftflow.models.enums import OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def order_channel(order_id: int | str) -> str:
    return f"order:{order_id}"


def vendor_channel(vendor_id: str) -> str:
    return f"vendor:{vendor_id}:orders"


@dataclass(frozen=True)
class StatusChanged:
    """订单状态变化事件（提交成功后才发布）。"""

    order_id: int
    old_status: Optional[str]
    new_status: str
    sub_status: Optional[str] = None
    vendor_id: Optional[str] = None
    customer_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def action(self) -> str:
        if self.old_status is None:
            return "created"
        if self.new_status == OrderStatus.CANCELLED:
            return "cancelled"
        return "status_changed"

    def channels(self) -> list[str]:
        keys = [order_channel(self.order_id)]
        if self.vendor_id:
            keys.append(vendor_channel(self.vendor_id))
        return keys

    def order_payload(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.new_status,
            "sub_status": self.sub_status,
            "updated_at": self.timestamp.isoformat(),
        }

    def vendor_payload(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.new_status,
            "action": self.action,
        }

    def payload_for(self, channel_key: str) -> Dict[str, Any]:
        if channel_key.startswith("vendor:"):
            return self.vendor_payload()
        return self.order_payload()
