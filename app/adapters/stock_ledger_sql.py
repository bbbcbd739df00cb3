# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.product_variant import ProductVariant
from app.models.stock_movement import StockMovement
from app.services.order_workflow_types import (
    BatchResult,
    LineResult,
    StockLevel,
    StockLine,
    StockMovementRecord,
)

logger = logging.getLogger("ordflow.db")

_Mutation = Callable[[int, int, int], Tuple[int, int]]


class SqlStockLedger:
    """
    product_variants 上的库存台账网关。

    每个 *_batch：独立 session，SELECT ... FOR UPDATE 锁住涉及的 variant 行，
    全部合法才提交；有一行不合法整批回滚。
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def read_available(self, variant_ids: Sequence[int]) -> Dict[int, StockLevel]:
        if not variant_ids:
            return {}
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(ProductVariant.id, ProductVariant.current_stock, ProductVariant.reserved_stock).where(
                        ProductVariant.id.in_(list(variant_ids))
                    )
                )
            ).all()
        return {int(r.id): StockLevel(current=int(r.current_stock), reserved=int(r.reserved_stock)) for r in rows}

    async def deduct_batch(
        self,
        order_id: int,
        lines: Sequence[StockLine],
        *,
        release_reserved: bool = False,
    ) -> BatchResult:
        def mutate(cur: int, res: int, qty: int) -> Tuple[int, int]:
            return max(cur - qty, 0), (max(res - qty, 0) if release_reserved else res)

        return await self._apply(order_id, "deduct", lines, mutate)

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

        return await self._apply(order_id, "release" if from_reserved else "restore", lines, mutate)

    async def reserve_batch(self, order_id: int, lines: Sequence[StockLine]) -> BatchResult:
        return await self._apply(order_id, "reserve", lines, lambda cur, res, qty: (cur, res + qty))

    async def record_movements(self, movements: Sequence[StockMovementRecord]) -> None:
        if not movements:
            return
        async with self.session_factory() as session:
            session.add_all(
                [
                    StockMovement(
                        variant_id=m.variant_id,
                        movement_type=m.movement_type.value,
                        quantity=m.quantity,
                        balance_before=m.balance_before,
                        balance_after=m.balance_after,
                        order_id=m.order_id,
                        source=m.source,
                        reason=m.reason,
                        created_by=m.created_by,
                    )
                    for m in movements
                ]
            )
            await session.commit()

    async def _apply(
        self,
        order_id: int,
        op: str,
        lines: Sequence[StockLine],
        mutate: _Mutation,
    ) -> BatchResult:
        ids = sorted({ln.variant_id for ln in lines})
        async with self.session_factory() as session:
            try:
                # 固定按 id 顺序加锁，避免并发批次互相死锁
                rows = (
                    await session.execute(
                        select(ProductVariant)
                        .where(ProductVariant.id.in_(ids))
                        .order_by(ProductVariant.id)
                        .with_for_update()
                    )
                ).scalars().all()
                by_id = {int(r.id): r for r in rows}

                unknown = [vid for vid in ids if vid not in by_id]
                if unknown:
                    await session.rollback()
                    logger.warning("ledger %s aborted: order=%s unknown variants=%s", op, order_id, unknown)
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
                    row = by_id[ln.variant_id]
                    cur, res = int(row.current_stock), int(row.reserved_stock)
                    new_cur, new_res = mutate(cur, res, int(ln.quantity))
                    row.current_stock = new_cur
                    row.reserved_stock = new_res
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
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.debug("ledger %s committed: order=%s lines=%d", op, order_id, len(results))
        return BatchResult(success=True, lines=tuple(results))
