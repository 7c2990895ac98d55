# giftflow/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    generate_latest,
    multiprocess,
)

# 业务指标
ORDER_TRANSITIONS = Counter(
    "giftflow_order_transitions_total", "Order status transitions applied", ["to_status"]
)
SETTLEMENTS = Counter("giftflow_settlements_total", "Settlement records by outcome", ["status"])
CASHBACK_CREDITS = Counter(
    "giftflow_cashback_credits_total", "Cashback credit attempts by result", ["result"]
)
REALTIME_FALLBACKS = Counter(
    "giftflow_realtime_fallbacks_total", "Realtime subscriptions that fell back to polling", ["kind"]
)
COLLABORATOR_ERRORS = Counter(
    "giftflow_collaborator_errors_total", "Errors from external collaborators", ["collaborator"]
)

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程模式直接导出默认 REGISTRY；
    多进程模式（设置了 PROMETHEUS_MULTIPROC_DIR）用 MultiProcessCollector 合并各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
