# giftflow/api/routers/payment.py
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request

from giftflow.api.deps import Services, get_actor, get_manager, get_services
from giftflow.core.errors import SignatureMismatchError, ValidationError
from giftflow.core.security import Actor
from giftflow.schemas.payment import PaymentVerifyIn, PaymentVerifyOut, WebhookAck
from giftflow.services.order_lifecycle import OrderLifecycleManager
from giftflow.services.payment_events import handle_gateway_event

log = logging.getLogger("giftflow.payments")

router = APIRouter(tags=["payment"])


@router.post("/payment/verify", response_model=PaymentVerifyOut)
async def verify_payment(
    body: PaymentVerifyIn,
    actor: Actor = Depends(get_actor),
    manager: OrderLifecycleManager = Depends(get_manager),
) -> PaymentVerifyOut:
    order = await manager.verify_payment(body.order_id, body.payment_id, body.signature, actor=actor)
    return PaymentVerifyOut(order_id=order.id, status=order.status, payment_status=order.payment_status)


@router.post("/webhooks/razorpay", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    services: Services = Depends(get_services),
) -> WebhookAck:
    """
    验签用原始 body（不能先 JSON 解析再序列化）；
    验签通过后一律回 2xx，业务拒绝只记日志，避免网关重投风暴。
    """
    raw = await request.body()
    signature = request.headers.get("x-razorpay-signature", "")
    if not signature or not services.gateway.verify_webhook(raw, signature):
        log.warning("rejected webhook with bad signature from %s", request.client.host if request.client else "?")
        raise SignatureMismatchError("Invalid webhook signature")

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    outcome = await handle_gateway_event(services.orders, payload)
    return WebhookAck(handled=outcome.handled, event=outcome.event)
