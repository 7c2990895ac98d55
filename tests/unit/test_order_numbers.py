# tests/unit/test_order_numbers.py
from giftflow.services.order_numbers import gen_order_number, is_valid_order_number, parse_order_number


def test_generated_numbers_are_wk_prefixed():
    n = gen_order_number()
    assert n.startswith("WK") and len(n) == 10
    assert is_valid_order_number(n)
    assert parse_order_number(n) == int(n[2:])


def test_parse_rejects_other_shapes():
    assert parse_order_number("WK12345") == 12345
    assert parse_order_number("wk12345") is None
    assert parse_order_number("WK") is None
    assert not is_valid_order_number("ORD-1")
