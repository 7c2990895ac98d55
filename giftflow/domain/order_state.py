# giftflow/domain/order_state.py
"""
订单状态机（纯函数）：只看 (当前状态, 目标状态) 是否在邻接表里，
表外的边一律拒绝，不做任何“就近纠正”。
"""

from __future__ import annotations

from typing import FrozenSet, Optional, Set, Tuple

from giftflow.core.errors import InvalidTransitionError
from giftflow.models.enums import OrderStatus as S

TERMINAL: FrozenSet[S] = frozenset({S.DELIVERED, S.CANCELLED})

# 出库（配送）之前的任意非终态都可以取消
CANCELLABLE_FROM: FrozenSet[S] = frozenset(
    {
        S.PENDING,
        S.AWAITING_DETAILS,
        S.PERSONALIZING,
        S.MOCKUP_READY,
        S.CRAFTING,
        S.READY_FOR_PICKUP,
    }
)

ALLOWED: Set[Tuple[Optional[S], S]] = {
    (None,               S.PENDING),           # 下单
    (S.PENDING,          S.AWAITING_DETAILS),  # 支付捕获
    (S.AWAITING_DETAILS, S.PERSONALIZING),     # 提交定制
    (S.PERSONALIZING,    S.PERSONALIZING),     # 补充 / 修改定制
    (S.PERSONALIZING,    S.MOCKUP_READY),      # 商家上传效果图
    (S.MOCKUP_READY,     S.CRAFTING),          # 顾客确认效果图
    (S.MOCKUP_READY,     S.PERSONALIZING),     # 顾客要求修改
    (S.CRAFTING,         S.READY_FOR_PICKUP),
    (S.READY_FOR_PICKUP, S.OUT_FOR_DELIVERY),
    (S.OUT_FOR_DELIVERY, S.DELIVERED),
} | {(src, S.CANCELLED) for src in CANCELLABLE_FROM}

# 同一条边可由不同操作触发：提交定制只能从这两个状态出发，
# mockup_ready → personalizing 只属于“要求修改”
CUSTOMIZE_FROM: FrozenSet[S] = frozenset({S.AWAITING_DETAILS, S.PERSONALIZING})
REVISE_FROM: FrozenSet[S] = frozenset({S.MOCKUP_READY})


def as_status(value: Optional[str | S]) -> Optional[S]:
    """字符串 / 枚举 → OrderStatus；None 表示“尚未创建”。未知值抛 ValueError。"""
    if value is None or isinstance(value, S):
        return value
    return S(str(value).strip().lower())


def is_allowed(current: Optional[str | S], requested: str | S) -> bool:
    try:
        return (as_status(current), as_status(requested)) in ALLOWED
    except ValueError:
        return False


def check_transition(
    current: Optional[str | S],
    requested: str | S,
    *,
    via: Optional[FrozenSet[S]] = None,
) -> S:
    """合法则返回目标状态，否则抛 InvalidTransitionError。via：该操作允许的源状态子集。"""
    if not is_allowed(current, requested) or (via is not None and as_status(current) not in via):
        try:
            sources = sources_for(requested)
        except ValueError:
            sources = frozenset()
        if via is not None:
            sources &= via
        raise InvalidTransitionError(
            None if current is None else str(current),
            str(requested),
            allowed_from=sorted(s.value for s in sources),
        )
    return S(requested)


def sources_for(requested: str | S) -> FrozenSet[S]:
    """能到达 requested 的所有源状态。"""
    target = S(requested)
    return frozenset(src for src, dst in ALLOWED if dst is target and src is not None)
