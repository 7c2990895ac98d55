# giftflow/models/enums.py
from __future__ import annotations

from enum import StrEnum


class OrderStatus(StrEnum):
    """
    订单主状态（履约状态机）：

    - PENDING            已下单，待支付
    - AWAITING_DETAILS   已支付，待顾客提交定制信息
    - PERSONALIZING      定制信息已提交，商家制作效果图中
    - MOCKUP_READY       效果图已上传，待顾客确认
    - CRAFTING           顾客已确认，商家制作中
    - READY_FOR_PICKUP   制作完成，待揽收
    - OUT_FOR_DELIVERY   配送中
    - DELIVERED          已签收（终态）
    - CANCELLED          已取消（终态）
    """

    PENDING = "pending"
    AWAITING_DETAILS = "awaiting_details"
    PERSONALIZING = "personalizing"
    MOCKUP_READY = "mockup_ready"
    CRAFTING = "crafting"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"
    REFUND_PENDING = "refund_pending"


class SettlementStatus(StrEnum):
    CREATED = "created"
    PROCESSED = "processed"
    FAILED = "failed"


class TransactionType(StrEnum):
    CREDIT = "credit"
    DEBIT = "debit"


class DeliveryType(StrEnum):
    LOCAL = "local"
    INTERCITY = "intercity"
