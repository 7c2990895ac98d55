# giftflow/services/order_numbers.py
from __future__ import annotations

import re
import secrets
from typing import Optional

ORDER_NUMBER_RE = re.compile(r"^WK(\d+)$")


def gen_order_number(digits: int = 8) -> str:
    """WK + 随机数字；唯一性由 orders.order_number 唯一约束兜底，冲突时重新生成。"""
    first = str(secrets.randbelow(9) + 1)
    rest = "".join(str(secrets.randbelow(10)) for _ in range(digits - 1))
    return f"WK{first}{rest}"


def parse_order_number(order_number: str) -> Optional[int]:
    m = ORDER_NUMBER_RE.match(order_number or "")
    return int(m.group(1)) if m else None


def is_valid_order_number(order_number: str) -> bool:
    return parse_order_number(order_number) is not None
