# -*- coding: utf-8 -*-
"""
端口的进程内实现：本地试跑 / 单元测试用。

- InMemoryStockLedger：每个 *_batch 在 asyncio.Lock 内整批执行，
  有一行不合法（未知 variant）则整批不落账；
- InMemoryOrderStore：按 id 存 OrderProjection；
- InMemoryAuditSink：把事件攒在列表里。
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from app.services.order_workflow_types import (
    AuditEvent,
    BatchResult,
    LineResult,
    OrderDraft,
    OrderProjection,
    StockLevel,
    StockLine,
    StockMovementRecord,
)

# (current, reserved, qty) -> (new_current, new_reserved)
_Mutation = Callable[[int, int, int], Tuple[int, int]]


class InMemoryStockLedger:
    def __init__(self, levels: Optional[Mapping[int, Tuple[int, int]]] = None) -> None:
        self._levels: Dict[int, List[int]] = {
            vid: [int(cur), int(res)] for vid, (cur, res) in (levels or {}).items()
        }
        self.movements: List[StockMovementRecord] = []
        self._lock = asyncio.Lock()

    def set_stock(self, variant_id: int, current: int, reserved: int = 0) -> None:
        self._levels[variant_id] = [int(current), int(reserved)]

    def level(self, variant_id: int) -> StockLevel:
        cur, res = self._levels[variant_id]
        return StockLevel(current=cur, reserved=res)

    async def read_available(self, variant_ids: Sequence[int]) -> Dict[int, StockLevel]:
        return {vid: self.level(vid) for vid in variant_ids if vid in self._levels}

    async def deduct_batch(
        self,
        order_id: int,
        lines: Sequence[StockLine],
        *,
        release_reserved: bool = False,
    ) -> BatchResult:
        def mutate(cur: int, res: int, qty: int) -> Tuple[int, int]:
            # 实物不够时扣到 0 为止，不出现负库存
            return max(cur - qty, 0), (max(res - qty, 0) if release_reserved else res)

        return await self._apply(lines, mutate)

    async def restore_batch(
        self,
        order_id: int,
        lines: Sequence[StockLine],
        *,
        from_reserved: bool = False,
    ) -> BatchResult:
        def mutate(cur: int, res: int, qty: int) -> Tuple[int, int]:
            if from_reserved:
                return cur, max(res - qty, 0)
            return cur + qty, res

        return await self._apply(lines, mutate)

    async def reserve_batch(self, order_id: int, lines: Sequence[StockLine]) -> BatchResult:
        return await self._apply(lines, lambda cur, res, qty: (cur, res + qty))

    async def record_movements(self, movements: Sequence[StockMovementRecord]) -> None:
        self.movements.extend(movements)

    async def _apply(self, lines: Sequence[StockLine], mutate: _Mutation) -> BatchResult:
        async with self._lock:
            unknown = {ln.variant_id for ln in lines if ln.variant_id not in self._levels}
            if unknown:
                return BatchResult(
                    success=False,
                    lines=tuple(
                        LineResult(
                            variant_id=ln.variant_id,
                            quantity=ln.quantity,
                            applied=False,
                            error="variant not found" if ln.variant_id in unknown else "batch aborted",
                        )
                        for ln in lines
                    ),
                )

            results: List[LineResult] = []
            for ln in lines:
                cur, res = self._levels[ln.variant_id]
                new_cur, new_res = mutate(cur, res, int(ln.quantity))
                self._levels[ln.variant_id] = [new_cur, new_res]
                results.append(
                    LineResult(
                        variant_id=ln.variant_id,
                        quantity=ln.quantity,
                        applied=True,
                        balance_before=cur,
                        balance_after=new_cur,
                        reserved_before=res,
                        reserved_after=new_res,
                    )
                )
            return BatchResult(success=True, lines=tuple(results))


class InMemoryOrderStore:
    def __init__(self) -> None:
        self._orders: Dict[int, OrderProjection] = {}
        self._ids = itertools.count(1)
        self.writes: List[Tuple[int, Dict[str, Any]]] = []

    def add(self, order: OrderProjection) -> OrderProjection:
        self._orders[order.id] = order
        return order

    def get(self, order_id: int) -> OrderProjection:
        return self._orders[order_id]

    async def read_order(self, order_id: int) -> Optional[OrderProjection]:
        return self._orders.get(order_id)

    async def write_status(self, order_id: int, fields: Mapping[str, Any]) -> None:
        self.writes.append((order_id, dict(fields)))
        self._orders[order_id] = self._orders[order_id].with_fields(fields)

    async def create_order(self, draft: OrderDraft) -> OrderProjection:
        oid = next(self._ids)
        while oid in self._orders:
            oid = next(self._ids)
        order = OrderProjection(
            id=oid,
            order_number=draft.order_number,
            status=draft.status,
            fulfillment_type=draft.fulfillment_type,
            lines=draft.lines,
            subtotal=draft.subtotal,
            discount_amount=draft.discount_amount,
            shipping_charges=draft.shipping_charges,
            total_amount=draft.total_amount,
            is_backorder=draft.is_backorder,
            rider_id=draft.rider_id,
            courier_partner=draft.courier_partner,
            destination_branch=draft.destination_branch,
            delivery_variant=draft.delivery_variant,
            internal_notes=draft.internal_notes,
        )
        self._orders[oid] = order
        return order


class InMemoryAuditSink:
    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def of(self, event: str) -> List[AuditEvent]:
        return [e for e in self.events if e.event == event]
