# app/metrics.py
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

# 工作流指标（result: ok / rejected / inventory_failed / ...）
TRANSITIONS = Counter(
    "order_transitions_total",
    "Order status transitions",
    ["channel", "to_status", "result"],
)
INVENTORY_TRIGGERS = Counter(
    "inventory_triggers_total",
    "Inventory trigger outcomes",
    ["action", "result"],
)
CREATIONS = Counter(
    "order_creations_total",
    "Order creations",
    ["channel", "result"],
)

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    在单进程模式下直接导出默认 REGISTRY；
    多进程模式下（设置了 PROMETHEUS_MULTIPROC_DIR）合并各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
