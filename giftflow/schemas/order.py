# giftflow/schemas/order.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, constr

from giftflow.models.order import Order
from giftflow.models.order_status_event import OrderStatusEvent

NonEmptyStr = constr(strip_whitespace=True, min_length=1, max_length=255)


class OrderLineIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: constr(strip_whitespace=True, min_length=1, max_length=64)
    name: NonEmptyStr
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)


class DeliveryAddressIn(BaseModel):
    """地址查询 / 地理编码在外部完成，这里只原样保存。"""

    model_config = ConfigDict(extra="allow")

    name: NonEmptyStr
    phone: NonEmptyStr
    address: NonEmptyStr
    city: NonEmptyStr
    pincode: constr(strip_whitespace=True, min_length=3, max_length=12)


class OrderCreateIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    vendor_id: constr(strip_whitespace=True, min_length=1, max_length=64)
    items: List[OrderLineIn] = Field(min_length=1)
    delivery_fee: Decimal = Field(ge=0)
    platform_fee: Optional[Decimal] = Field(default=None, ge=0)
    cashback_used: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_address: DeliveryAddressIn
    delivery_type: str = "local"
    # 可选：前端算好的总额，服务端会核对
    total: Optional[Decimal] = None


class OrderCreateOut(BaseModel):
    order_id: int
    order_number: str
    payment_ref: Optional[str]
    total: Decimal
    status: str


class OrderItemOut(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    customization: Optional[Dict[str, Any]] = None


class OrderOut(BaseModel):
    order_id: int
    order_number: str
    customer_id: str
    vendor_id: str
    status: str
    sub_status: Optional[str]
    payment_status: str
    payment_ref: Optional[str]
    item_total: Decimal
    delivery_fee: Decimal
    platform_fee: Decimal
    cashback_used: Decimal
    total: Decimal
    delivery_type: str
    delivery_address: Dict[str, Any]
    mockup_images: Optional[Dict[str, Any]] = None
    revision_request: Optional[Dict[str, Any]] = None
    cancel_reason: Optional[str] = None
    items: List[OrderItemOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderOut":
        return cls(
            order_id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            vendor_id=order.vendor_id,
            status=order.status,
            sub_status=order.sub_status,
            payment_status=order.payment_status,
            payment_ref=order.payment_ref,
            item_total=order.item_total,
            delivery_fee=order.delivery_fee,
            platform_fee=order.platform_fee,
            cashback_used=order.cashback_used,
            total=order.total,
            delivery_type=order.delivery_type,
            delivery_address=order.delivery_address,
            mockup_images=order.mockup_images,
            revision_request=order.revision_request,
            cancel_reason=order.cancel_reason,
            items=[
                OrderItemOut(
                    product_id=i.product_id,
                    name=i.name,
                    quantity=i.quantity,
                    unit_price=i.unit_price,
                    customization=i.customization,
                )
                for i in order.items
            ],
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class VendorOrderOut(BaseModel):
    order_id: int
    order_number: str
    status: str
    sub_status: Optional[str]
    total: Decimal
    updated_at: datetime


class VendorOrdersOut(BaseModel):
    items: List[VendorOrderOut]


class CustomizationIn(BaseModel):
    """单个商品的定制内容：文字 / 照片 URL / 留言，其它字段原样保留。"""

    model_config = ConfigDict(extra="allow")

    text: Optional[str] = Field(default=None, max_length=500)
    photo: Optional[str] = None
    message: Optional[str] = Field(default=None, max_length=1000)


class CustomizeIn(BaseModel):
    items: Dict[str, CustomizationIn] = Field(min_length=1)


class MockupDecisionIn(BaseModel):
    approved: bool
    feedback: Optional[str] = Field(default=None, max_length=1000)
    product_id: Optional[str] = None


class MockupUploadIn(BaseModel):
    images: Dict[str, constr(strip_whitespace=True, min_length=1)] = Field(min_length=1)
    note: Optional[str] = Field(default=None, max_length=255)


class CancelIn(BaseModel):
    reason: str = Field(default="", max_length=255)


class TimelineEventOut(BaseModel):
    old_status: Optional[str]
    new_status: str
    sub_status: Optional[str]
    actor: Optional[str]
    created_at: datetime

    @classmethod
    def from_event(cls, ev: OrderStatusEvent) -> "TimelineEventOut":
        return cls(
            old_status=ev.old_status,
            new_status=ev.new_status,
            sub_status=ev.sub_status,
            actor=ev.actor,
            created_at=ev.created_at,
        )


class TimelineOut(BaseModel):
    order_id: int
    events: List[TimelineEventOut]
