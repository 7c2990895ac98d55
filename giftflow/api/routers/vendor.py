# giftflow/api/routers/vendor.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from giftflow.api.deps import get_actor, get_manager
from giftflow.core.security import Actor
from giftflow.schemas.order import MockupUploadIn, OrderOut
from giftflow.services.order_lifecycle import OrderLifecycleManager

router = APIRouter(prefix="/vendor/orders", tags=["vendor"])


@router.post("/{order_id}/mockup", response_model=OrderOut)
async def upload_mockup(
    order_id: int,
    body: MockupUploadIn,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderOut:
    order = await manager.upload_mockup(order_id, body.images, actor=actor, note=body.note)
    return OrderOut.from_order(order)


@router.post("/{order_id}/ready", response_model=OrderOut)
async def mark_ready(
    order_id: int,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderOut:
    return OrderOut.from_order(await manager.mark_ready(order_id, actor=actor))


@router.post("/{order_id}/dispatch", response_model=OrderOut)
async def dispatch(
    order_id: int,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> OrderOut:
    return OrderOut.from_order(await manager.dispatch(order_id, actor=actor))
