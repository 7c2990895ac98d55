# giftflow/domain/money.py
"""
金额计算（纯函数）

约定：
- 订单 / 钱包金额用 Decimal，两位小数
- 凡是发给支付网关、以及分账记录里的金额，一律用最小货币单位（paise）整数
- 舍入统一 ROUND_HALF_UP；分账时商家金额 = 总额 - 平台金额（只舍入一次，保证和恒等）
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple

from giftflow.core.errors import ValidationError

CENT = Decimal("0.01")
_HUNDRED = Decimal(100)


def as_money(value: Decimal | int | str) -> Decimal:
    try:
        d = Decimal(str(value))
    except ArithmeticError as exc:
        raise ValidationError(f"Invalid amount {value!r}") from exc
    if not d.is_finite():
        raise ValidationError(f"Invalid amount {value!r}")
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor(amount: Decimal | int | str) -> int:
    """954.00 → 95400"""
    return int((as_money(amount) * _HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor(minor: int) -> Decimal:
    return (Decimal(int(minor)) / _HUNDRED).quantize(CENT)


def item_total_of(lines: Iterable[Tuple[int, Decimal]]) -> Decimal:
    """lines: (quantity, unit_price)"""
    total = Decimal(0)
    for qty, price in lines:
        if qty <= 0:
            raise ValidationError("Item quantity must be positive")
        if as_money(price) < 0:
            raise ValidationError("Item unit price must not be negative")
        total += as_money(price) * qty
    return total.quantize(CENT)


def compute_total(
    item_total: Decimal,
    delivery_fee: Decimal,
    platform_fee: Decimal,
    cashback_used: Decimal,
) -> Decimal:
    return (
        as_money(item_total) + as_money(delivery_fee) + as_money(platform_fee) - as_money(cashback_used)
    ).quantize(CENT)


def validate_totals(
    *,
    item_total: Decimal,
    delivery_fee: Decimal,
    platform_fee: Decimal,
    cashback_used: Decimal,
    max_usage_ratio: Decimal,
    min_order_value: Decimal,
    total: Decimal | None = None,
) -> Decimal:
    """
    校验订单金额不变式，返回（或核对）total：
    - 所有金额非负
    - cashback_used <= item_total * max_usage_ratio
    - 使用返现时 item_total 需达到 min_order_value
    - 若调用方给了 total，必须与公式结果完全一致
    """
    fields = {
        "item_total": item_total,
        "delivery_fee": delivery_fee,
        "platform_fee": platform_fee,
        "cashback_used": cashback_used,
    }
    for name, value in fields.items():
        if as_money(value) < 0:
            raise ValidationError(f"{name} must not be negative", context={"field": name})

    if as_money(cashback_used) > 0:
        cap = (as_money(item_total) * Decimal(max_usage_ratio)).quantize(CENT, rounding=ROUND_HALF_UP)
        if as_money(cashback_used) > cap:
            raise ValidationError(
                f"cashback_used exceeds the allowed maximum of {cap}",
                context={"field": "cashback_used", "max_allowed": str(cap)},
            )
        if as_money(item_total) < as_money(min_order_value):
            raise ValidationError(
                f"Cashback can only be used on orders of at least {as_money(min_order_value)}",
                context={"field": "cashback_used", "min_order_value": str(as_money(min_order_value))},
            )

    expected = compute_total(item_total, delivery_fee, platform_fee, cashback_used)
    if expected < 0:
        raise ValidationError("Order total must not be negative")
    if total is not None and as_money(total) != expected:
        raise ValidationError(
            f"Order total {as_money(total)} does not match computed total {expected}",
            context={"field": "total", "expected": str(expected)},
        )
    return expected


def split_amounts(total_minor: int, commission_rate_percent: Decimal) -> Tuple[int, int]:
    """
    返回 (platform_amount, vendor_amount)，单位 paise。
    95400 @ 18% → (17172, 78228)
    """
    if total_minor < 0:
        raise ValidationError("Settlement total must not be negative")
    rate = Decimal(str(commission_rate_percent))
    if rate < 0 or rate > 100:
        raise ValidationError("Commission rate must be between 0 and 100")
    platform = int((Decimal(total_minor) * rate / _HUNDRED).to_integral_value(rounding=ROUND_HALF_UP))
    return platform, total_minor - platform


def cashback_amount(order_total: Decimal, rate_percent: Decimal) -> Decimal:
    """954 @ 10% → 95.40"""
    rate = Decimal(str(rate_percent))
    if rate < 0:
        raise ValidationError("Cashback rate must not be negative")
    return (as_money(order_total) * rate / _HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
