# giftflow/api/routers/orders.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from giftflow.api.deps import get_actor, get_manager
from giftflow.core.errors import ValidationError
from giftflow.core.security import Actor
from giftflow.schemas.order import (
    CancelIn,
    CustomizeIn,
    MockupDecisionIn,
    OrderCreateIn,
    OrderCreateOut,
    OrderOut,
    TimelineEventOut,
    TimelineOut,
    VendorOrderOut,
    VendorOrdersOut,
)
from giftflow.services.order_lifecycle import OrderLifecycleManager, OrderLine

router = APIRouter(tags=["orders"])


# ===========================
#   顾客侧
# ===========================


@router.post("/orders", response_model=OrderCreateOut)
async def create_order(
    body: OrderCreateIn,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderCreateOut:
    order = await manager.create_order(
        actor,
        vendor_id=body.vendor_id,
        items=[
            OrderLine(
                product_id=line.product_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for line in body.items
        ],
        delivery_fee=body.delivery_fee,
        delivery_address=body.delivery_address.model_dump(),
        delivery_type=body.delivery_type,
        platform_fee=body.platform_fee,
        cashback_used=body.cashback_used,
        total=body.total,
    )
    return OrderCreateOut(
        order_id=order.id,
        order_number=order.order_number,
        payment_ref=order.payment_ref,
        total=order.total,
        status=order.status,
    )


@router.get("/orders/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: int,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderOut:
    return OrderOut.from_order(await manager.get_order(order_id, actor=actor))


@router.get("/orders/{order_id}/timeline", response_model=TimelineOut)
async def get_timeline(
    order_id: int,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> TimelineOut:
    events = await manager.timeline(order_id, actor=actor)
    return TimelineOut(order_id=order_id, events=[TimelineEventOut.from_event(ev) for ev in events])


@router.post("/orders/{order_id}/customize", response_model=OrderOut)
async def submit_customization(
    order_id: int,
    body: CustomizeIn,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderOut:
    details = {pid: c.model_dump(exclude_none=True) for pid, c in body.items.items()}
    return OrderOut.from_order(await manager.submit_customization(order_id, details, actor=actor))


@router.post("/orders/{order_id}/mockup", response_model=OrderOut)
async def decide_mockup(
    order_id: int,
    body: MockupDecisionIn,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderOut:
    """approved=true → 进入制作；false → 带 feedback 打回重做。"""
    if body.approved:
        order = await manager.approve_mockup(order_id, actor=actor)
    else:
        if not (body.feedback or "").strip():
            raise ValidationError("feedback is required when requesting a revision")
        order = await manager.request_revision(
            order_id, body.feedback, actor=actor, product_id=body.product_id
        )
    return OrderOut.from_order(order)


@router.post("/orders/{order_id}/cancel", response_model=OrderOut)
async def cancel_order(
    order_id: int,
    body: CancelIn,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderOut:
    return OrderOut.from_order(await manager.cancel(order_id, body.reason, actor=actor))


@router.post("/orders/{order_id}/delivered", response_model=OrderOut)
async def mark_delivered(
    order_id: int,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderOut:
    # 配送服务商回调 / 运营手工签收；仅 admin / system
    return OrderOut.from_order(await manager.mark_delivered(order_id, actor=actor))


# ===========================
#   商家订单列表（轮询降级也读这里）
# ===========================


@router.get("/vendors/{vendor_id}/orders", response_model=VendorOrdersOut)
async def list_vendor_orders(
    vendor_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> VendorOrdersOut:
    orders = await manager.list_vendor_orders(vendor_id, actor=actor, status=status_filter, limit=limit)
    return VendorOrdersOut(
        items=[
            VendorOrderOut(
                order_id=o.id,
                order_number=o.order_number,
                status=o.status,
                sub_status=o.sub_status,
                total=o.total,
                updated_at=o.updated_at,
            )
            for o in orders
        ]
    )
