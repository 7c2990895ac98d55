# giftflow/schemas/wallet.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel


class CashbackCreditIn(BaseModel):
    order_id: int


class CashbackCreditOut(BaseModel):
    order_id: int
    amount_credited: Decimal
    new_balance: Decimal


class WalletTransactionOut(BaseModel):
    type: str
    amount: Decimal
    balance_after: Decimal
    order_id: Optional[int]
    description: Optional[str]
    created_at: datetime


class WalletOut(BaseModel):
    user_id: str
    balance: Decimal
    transactions: List[WalletTransactionOut]
