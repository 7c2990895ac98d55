# giftflow/services/payment_events.py
"""
支付网关 webhook 事件 → 幂等的 confirm_payment

- payment.captured / order.paid → 捕获
- payment.failed → 捕获失败
- 其它事件忽略
订单定位：优先 notes.order_id，其次按网关订单号（orders.payment_ref）反查。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from giftflow.core.errors import InvalidTransitionError, OrderNotFoundError
from giftflow.core.security import SYSTEM_ACTOR
from giftflow.models.enums import PaymentStatus
from giftflow.services.order_lifecycle import OrderLifecycleManager

log = logging.getLogger("giftflow.payments")

CAPTURE_EVENTS = {"payment.captured", "order.paid"}
FAILURE_EVENTS = {"payment.failed"}


@dataclass(frozen=True)
class WebhookOutcome:
    event: str
    handled: bool
    order_id: Optional[int] = None
    reason: Optional[str] = None


async def handle_gateway_event(manager: OrderLifecycleManager, payload: Dict[str, Any]) -> WebhookOutcome:
    event = str(payload.get("event") or "")
    if event not in CAPTURE_EVENTS | FAILURE_EVENTS:
        log.info("unhandled gateway event %r", event)
        return WebhookOutcome(event, False, reason="unhandled_event")

    body = payload.get("payload") or {}
    payment = (body.get("payment") or {}).get("entity") or {}
    payment_id = payment.get("id")
    if not payment_id:
        log.warning("gateway event %s carried no payment entity", event)
        return WebhookOutcome(event, False, reason="missing_payment")

    order_id = await _resolve_order_id(manager, payment)
    if order_id is None:
        log.warning("gateway event %s for payment %s matches no order", event, payment_id)
        return WebhookOutcome(event, False, reason="order_not_found")

    status = PaymentStatus.CAPTURED.value if event in CAPTURE_EVENTS else PaymentStatus.FAILED.value
    try:
        await manager.confirm_payment(order_id, payment_id, status, actor=SYSTEM_ACTOR)
    except (InvalidTransitionError, OrderNotFoundError) as exc:
        # 回 2xx，避免网关无限重投；问题留给运维按日志处理
        log.error("gateway event %s for order %s rejected: %s", event, order_id, exc)
        return WebhookOutcome(event, False, order_id, reason=exc.error_code)
    return WebhookOutcome(event, True, order_id)


async def _resolve_order_id(manager: OrderLifecycleManager, payment: Dict[str, Any]) -> Optional[int]:
    notes = payment.get("notes") or {}
    raw = notes.get("order_id") if isinstance(notes, dict) else None
    if raw is not None and str(raw).isdigit():
        return int(raw)
    gateway_order_id = payment.get("order_id")
    if gateway_order_id:
        return await manager.order_id_for_payment_ref(str(gateway_order_id))
    return None
