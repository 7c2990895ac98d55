# giftflow/db/base.py
from __future__ import annotations

import importlib
import logging

from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("giftflow.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


_INITIALIZED: bool = False  # 防重复初始化

MODEL_MODULES = [
    "giftflow.models.order",
    "giftflow.models.order_item",
    "giftflow.models.order_status_event",
    "giftflow.models.wallet",
    "giftflow.models.wallet_transaction",
    "giftflow.models.settlement_record",
    "giftflow.models.vendor_payout_account",
]


def init_models(*, force: bool = False) -> None:
    """
    集中导入模型 + 固化关系映射（Alembic / create_all 之前调用）。
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        return

    for mod in MODEL_MODULES:
        importlib.import_module(mod)

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized & mappers configured (loaded %d modules)", len(MODEL_MODULES))
