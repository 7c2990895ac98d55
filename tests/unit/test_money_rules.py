# tests/unit/test_money_rules.py
from __future__ import annotations

from decimal import Decimal

import pytest

from giftflow.core.errors import ValidationError
from giftflow.domain.money import (
    cashback_amount,
    compute_total,
    from_minor,
    item_total_of,
    split_amounts,
    to_minor,
    validate_totals,
)

CAP = Decimal("0.5")
MIN_ORDER = Decimal("500")


def _validate(**overrides):
    kwargs = dict(
        item_total=Decimal("1000"),
        delivery_fee=Decimal("49"),
        platform_fee=Decimal("5"),
        cashback_used=Decimal("100"),
        max_usage_ratio=CAP,
        min_order_value=MIN_ORDER,
    )
    kwargs.update(overrides)
    return validate_totals(**kwargs)


def test_total_formula_example():
    assert _validate() == Decimal("954.00")
    assert compute_total(Decimal("1000"), Decimal("49"), Decimal("5"), Decimal("100")) == Decimal("954.00")


def test_caller_total_must_match_exactly():
    assert _validate(total=Decimal("954")) == Decimal("954.00")
    with pytest.raises(ValidationError) as ei:
        _validate(total=Decimal("955"))
    assert ei.value.context["expected"] == "954.00"


@pytest.mark.parametrize("field", ["item_total", "delivery_fee", "platform_fee", "cashback_used"])
def test_negative_amounts_rejected(field):
    with pytest.raises(ValidationError):
        _validate(**{field: Decimal("-1")})


def test_cashback_cap_and_minimum_order():
    assert _validate(cashback_used=Decimal("500")) == Decimal("554.00")
    with pytest.raises(ValidationError):
        _validate(cashback_used=Decimal("500.01"))
    with pytest.raises(ValidationError):
        _validate(item_total=Decimal("400"), cashback_used=Decimal("10"))
    # 不用返现时没有最低消费限制
    assert _validate(item_total=Decimal("100"), cashback_used=Decimal("0")) == Decimal("154.00")


def test_item_total_of_lines():
    assert item_total_of([(2, Decimal("450")), (1, Decimal("100"))]) == Decimal("1000.00")
    with pytest.raises(ValidationError):
        item_total_of([(0, Decimal("10"))])


def test_split_example():
    assert split_amounts(95400, Decimal("18")) == (17172, 78228)


@pytest.mark.parametrize(
    "total,rate",
    [(1, Decimal("18")), (99999, Decimal("12.5")), (333, Decimal("33.33")), (95401, Decimal("18")), (0, Decimal("7"))],
)
def test_split_always_sums_to_total(total, rate):
    platform, vendor = split_amounts(total, rate)
    assert platform + vendor == total
    assert platform >= 0 and vendor >= 0


def test_split_rejects_bad_rate():
    with pytest.raises(ValidationError):
        split_amounts(100, Decimal("101"))


def test_cashback_rounds_half_up_to_paise():
    assert cashback_amount(Decimal("954"), Decimal("10")) == Decimal("95.40")
    # 0.125 → 0.13（截断会得到 0.12）
    assert cashback_amount(Decimal("1.25"), Decimal("10")) == Decimal("0.13")


def test_minor_unit_conversion():
    assert to_minor(Decimal("954")) == 95400
    assert to_minor("0.015") == 2
    assert from_minor(17172) == Decimal("171.72")
