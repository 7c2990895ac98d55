# giftflow/schemas/payment.py
from __future__ import annotations

from pydantic import BaseModel, constr


class PaymentVerifyIn(BaseModel):
    order_id: int
    payment_id: constr(strip_whitespace=True, min_length=1, max_length=64)
    signature: constr(strip_whitespace=True, min_length=1)


class PaymentVerifyOut(BaseModel):
    order_id: int
    status: str
    payment_status: str


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool
    event: str
