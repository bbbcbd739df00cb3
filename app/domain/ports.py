# -*- coding: utf-8 -*-
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

from app.services.order_workflow_types import (
    AuditEvent,
    BatchResult,
    OrderDraft,
    OrderProjection,
    StockLevel,
    StockLine,
    StockMovementRecord,
)


class StockLedgerGateway(Protocol):
    """
    库存台账网关（外部协作者）。

    - 每个 *_batch 调用自身原子：要么整批落账，要么整批不落账；
    - 幂等由网关负责，引擎不做重试；
    - 任何一行失败都由引擎视为“硬失败，需人工对账”。
    """

    async def read_available(self, variant_ids: Sequence[int]) -> Dict[int, StockLevel]: ...

    async def deduct_batch(
        self,
        order_id: int,
        lines: Sequence[StockLine],
        *,
        release_reserved: bool = False,
    ) -> BatchResult: ...

    async def restore_batch(
        self,
        order_id: int,
        lines: Sequence[StockLine],
        *,
        from_reserved: bool = False,
    ) -> BatchResult: ...

    async def reserve_batch(self, order_id: int, lines: Sequence[StockLine]) -> BatchResult: ...

    async def record_movements(self, movements: Sequence[StockMovementRecord]) -> None: ...


class OrderRecordStore(Protocol):
    async def read_order(self, order_id: int) -> Optional[OrderProjection]: ...

    async def write_status(self, order_id: int, fields: Mapping[str, Any]) -> None: ...

    async def create_order(self, draft: OrderDraft) -> OrderProjection: ...


class AuditSink(Protocol):
    async def emit(self, event: AuditEvent) -> None: ...
