# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.enums import FulfillmentType, OrderStatus, StockCommitment
from app.models.order import Order
from app.models.order_line import OrderLine
from app.services.order_workflow_types import OrderDraft, OrderLineSnapshot, OrderProjection
from app.services.workflow_errors import OrderNotFound

logger = logging.getLogger("ordflow.db")

# OrderProjection 上能直接按列名写回的字段
_WRITABLE = frozenset(
    c
    for c in OrderProjection.__dataclass_fields__
    if c not in {"id", "lines", "order_number"}
)


def to_projection(row: Order) -> OrderProjection:
    return OrderProjection(
        id=int(row.id),
        status=OrderStatus(row.status),
        fulfillment_type=FulfillmentType(row.fulfillment_type),
        lines=tuple(
            OrderLineSnapshot(
                variant_id=int(ln.variant_id),
                quantity=int(ln.quantity),
                unit_price=ln.unit_price,
                unit_cost=ln.unit_cost,
                line_total=ln.line_total,
                sku=ln.sku,
            )
            for ln in row.lines
        ),
        order_number=row.order_number,
        stock_commitment=StockCommitment(row.stock_commitment),
        rider_id=row.rider_id,
        courier_partner=row.courier_partner,
        tracking_code=row.tracking_code,
        destination_branch=row.destination_branch,
        delivery_variant=row.delivery_variant,
        subtotal=row.subtotal,
        discount_amount=row.discount_amount,
        shipping_charges=row.shipping_charges,
        total_amount=row.total_amount,
        is_backorder=bool(row.is_backorder),
        needs_reconciliation=bool(row.needs_reconciliation),
        internal_notes=row.internal_notes,
        cancellation_reason=row.cancellation_reason,
        rejection_reason=row.rejection_reason,
        return_reason=row.return_reason,
        followup_reason=row.followup_reason,
        assigned_at=row.assigned_at,
        dispatched_at=row.dispatched_at,
        handed_over_at=row.handed_over_at,
        delivered_at=row.delivered_at,
        cancelled_at=row.cancelled_at,
        returned_at=row.returned_at,
    )


class SqlOrderStore:
    """orders / order_lines 上的 OrderRecordStore 实现；每次调用独立 session、独立提交。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def read_order(self, order_id: int) -> Optional[OrderProjection]:
        async with self.session_factory() as session:
            row = await session.get(Order, order_id)
            return to_projection(row) if row is not None else None

    async def write_status(self, order_id: int, fields: Mapping[str, Any]) -> None:
        values: Dict[str, Any] = {}
        for k, v in fields.items():
            if k not in _WRITABLE:
                raise ValueError(f"field not writable: {k}")
            values[k] = v.value if isinstance(v, Enum) else v
        if not values:
            return
        async with self.session_factory() as session:
            await session.execute(update(Order).where(Order.id == order_id).values(**values))
            await session.commit()
        logger.debug("order %s written: %s", order_id, sorted(values))

    async def create_order(self, draft: OrderDraft) -> OrderProjection:
        async with self.session_factory() as session:
            row = Order(
                order_number=draft.order_number,
                status=draft.status.value,
                fulfillment_type=draft.fulfillment_type.value,
                stock_commitment=StockCommitment.NONE.value,
                subtotal=draft.subtotal,
                discount_amount=draft.discount_amount,
                shipping_charges=draft.shipping_charges,
                total_amount=draft.total_amount,
                is_backorder=draft.is_backorder,
                needs_reconciliation=False,
                rider_id=draft.rider_id,
                courier_partner=draft.courier_partner,
                destination_branch=draft.destination_branch,
                delivery_variant=draft.delivery_variant,
                internal_notes=draft.internal_notes,
                lines=[
                    OrderLine(
                        variant_id=ln.variant_id,
                        sku=ln.sku,
                        quantity=ln.quantity,
                        unit_price=ln.unit_price,
                        unit_cost=ln.unit_cost,
                        line_total=ln.line_total,
                    )
                    for ln in draft.lines
                ],
            )
            session.add(row)
            await session.commit()
            oid = int(row.id)
        created = await self.read_order(oid)
        if created is None:
            raise OrderNotFound(oid)
        return created
