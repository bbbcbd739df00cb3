# app/services/inventory_trigger.py
"""
库存触发执行器：在状态写入之后，按“目标状态”执行库存动作。

- packed            → DEDUCT
- store_sale        → DEDUCT（仅门店跳过 packed 直接成交时，即迁移前 ∈ {intake, converted}）
- cancelled         → RESTORE（仅当迁移前状态 ∈ {converted, packed, hold}）
- rejected          → RESTORE（仅当迁移前状态 ∈ {out_for_delivery, assigned, in_transit}）
- returned          → RESTORE
- converted         → RESERVE（SOFT：先读库存，不足只给警告并标记缺货单）
- 其余              → NONE（记录日志）

真正恢复什么由订单的 stock_commitment 决定：
  deducted → 回库 current_stock；reserved → 释放 reserved_stock；none → 什么都不做。
这样一张订单的预占最多释放一次，扣减最多恢复一次。

失败不抛出：返回 InventoryOutcome(success=False)，状态不回滚，由调用方标记待对账。
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

from app.domain.ports import StockLedgerGateway
from app.metrics import INVENTORY_TRIGGERS
from app.models.enums import (
    InventoryAction,
    MovementType,
    OrderStatus,
    StockCommitAction,
    StockCommitment,
)
from app.services.order_workflow_types import (
    ActorContext,
    BatchResult,
    InventoryOutcome,
    OrderProjection,
    StockLine,
    StockMovementRecord,
    WorkflowWarning,
)
from app.services.stock_policy import (
    BACKORDER_WARNING,
    STOCK_UNVERIFIED_MESSAGE,
    StockPolicy,
    evaluate_stock,
    resolve_stock_policy,
)
from app.services.workflow_errors import InventoryTriggerFailure
from app.services.workflow_rules import INVENTORY_TRIGGERS as TRIGGER_TABLE

logger = logging.getLogger("ordflow.inventory")

SOURCE_WORKFLOW = "order_workflow"
SOURCE_CREATE = "order_create"


def stock_lines(order: OrderProjection) -> List[StockLine]:
    merged: dict[int, int] = {}
    for ln in order.lines:
        merged[ln.variant_id] = merged.get(ln.variant_id, 0) + int(ln.quantity)
    return [StockLine(variant_id=v, quantity=q) for v, q in sorted(merged.items())]


class InventoryTriggerExecutor:
    def __init__(self, ledger: StockLedgerGateway) -> None:
        self.ledger = ledger

    async def run(
        self,
        prior: OrderProjection,
        target: OrderStatus,
        actor: Optional[ActorContext] = None,
    ) -> InventoryOutcome:
        """
        prior：迁移前的订单快照（status / stock_commitment 都是旧值），
        only_from 守卫必须用它判断，不能用已经写入的新状态。
        """
        trigger = TRIGGER_TABLE.get(target)
        action = trigger.action if trigger is not None else InventoryAction.NONE

        if trigger is not None and trigger.only_from is not None and prior.status not in trigger.only_from:
            return self._skip(
                prior,
                action,
                f"prior status '{prior.status.value}' not eligible for {action.value} on '{target.value}'",
            )

        reason = trigger.description if trigger is not None else None
        source = f"{SOURCE_WORKFLOW}:{target.value}"

        match action:
            case InventoryAction.NONE:
                return self._skip(prior, action, f"no inventory trigger for '{target.value}'")

            case InventoryAction.RESERVE:
                policy = resolve_stock_policy(target, prior.fulfillment_type)
                if policy.commit is not StockCommitAction.RESERVE:
                    return self._skip(prior, action, f"{prior.fulfillment_type.value} orders do not reserve stock")
                if prior.stock_commitment is not StockCommitment.NONE:
                    return self._skip(prior, action, f"stock already {prior.stock_commitment.value}")
                warnings, short = await self._soft_check(prior, policy)
                if short:
                    warnings.append(BACKORDER_WARNING)
                out = await self.apply(prior, action, actor, reason=reason, source=source)
                return replace(out, warnings=tuple(warnings), backorder=short and out.success)

            case InventoryAction.DEDUCT:
                if prior.stock_commitment is StockCommitment.DEDUCTED:
                    return self._skip(prior, action, "stock already deducted")
                if target is OrderStatus.PACKED:
                    # packed 的库存检查已经在校验器里做过
                    return await self.apply(prior, action, actor, reason=reason, source=source)
                warnings, _ = await self._soft_check(prior, resolve_stock_policy(target, prior.fulfillment_type))
                out = await self.apply(prior, action, actor, reason=reason, source=source)
                return replace(out, warnings=tuple(warnings))

            case InventoryAction.RESTORE:
                if prior.stock_commitment is StockCommitment.NONE:
                    return self._skip(prior, action, "nothing reserved or deducted")
                return await self.apply(prior, action, actor, reason=reason, source=source)

        raise AssertionError(f"unhandled inventory action: {action!r}")

    async def _soft_check(
        self, order: OrderProjection, policy: StockPolicy
    ) -> Tuple[List[WorkflowWarning], bool]:
        """不拦截的库存检查：返回 (警告, 是否缺货)。读库存失败只记警告。"""
        variant_ids = sorted({ln.variant_id for ln in order.lines})
        if not variant_ids:
            return [], False
        try:
            levels = await self.ledger.read_available(variant_ids)
        except Exception as e:
            logger.warning("stock check unavailable: order=%s err=%s", order.id, e)
            return [
                WorkflowWarning(
                    code="STOCK_CHECK_UNAVAILABLE",
                    message=STOCK_UNVERIFIED_MESSAGE,
                    details={"error": str(e)},
                )
            ], False
        ev = evaluate_stock(order.lines, levels, policy)
        if not ev.ok:
            logger.warning(
                "stock shortfall (%s): order=%s variants=%s",
                policy.mode.value,
                order.id,
                [s.variant_id for s in ev.shortfalls],
            )
        return ev.warnings(), not ev.ok

    async def apply(
        self,
        order: OrderProjection,
        action: InventoryAction,
        actor: Optional[ActorContext] = None,
        *,
        reason: Optional[str] = None,
        source: str = SOURCE_WORKFLOW,
    ) -> InventoryOutcome:
        """执行一次库存动作；下单时的预占 / 扣减也走这里。"""
        lines = stock_lines(order)
        if not lines:
            return self._skip(order, action, "order has no lines")

        actor_id = actor.user_id if actor is not None else None
        from_reserved = order.stock_commitment is StockCommitment.RESERVED
        res: Optional[BatchResult] = None
        try:
            match action:
                case InventoryAction.DEDUCT:
                    res = await self.ledger.deduct_batch(order.id, lines, release_reserved=from_reserved)
                    movement_type = MovementType.SALE
                    commitment_after = StockCommitment.DEDUCTED
                case InventoryAction.RESERVE:
                    res = await self.ledger.reserve_batch(order.id, lines)
                    movement_type = MovementType.RESERVE
                    commitment_after = StockCommitment.RESERVED
                case InventoryAction.RESTORE:
                    res = await self.ledger.restore_batch(order.id, lines, from_reserved=from_reserved)
                    movement_type = MovementType.RESERVE if from_reserved else MovementType.RETURN
                    commitment_after = StockCommitment.NONE
                case _:
                    return self._skip(order, action, "nothing to apply")

            movements = self._movements(
                order,
                res,
                movement_type,
                source,
                reason,
                actor_id,
                releasing=action is InventoryAction.RESTORE,
            )
            if movements:
                await self.ledger.record_movements(movements)

            if not res.success:
                # 整批视为失败：即便网关落了部分行，也不当作部分成功继续
                raise InventoryTriggerFailure(
                    f"{action.value} failed for {len(res.failed_lines)} line(s)",
                    failed_variant_ids=[ln.variant_id for ln in res.failed_lines],
                )
        except InventoryTriggerFailure as e:
            return self._failed(order, action, str(e), e.failed_variant_ids)
        except Exception as e:
            logger.exception("inventory gateway error: order=%s action=%s", order.id, action.value)
            # 台账已整批落账、只是流水没写进去：承诺照常推进，避免下次重复扣减 / 恢复
            applied = commitment_after if res is not None and res.success else None
            return self._failed(order, action, f"{type(e).__name__}: {e}", (), commitment_after=applied)

        INVENTORY_TRIGGERS.labels(action=action.value, result="ok").inc()
        logger.info(
            "inventory %s applied: order=%s lines=%d commitment=%s->%s",
            action.value,
            order.id,
            len(lines),
            order.stock_commitment.value,
            commitment_after.value,
        )
        return InventoryOutcome(
            action=action,
            success=True,
            commitment_after=commitment_after,
            movements=len(movements),
        )

    @staticmethod
    def _movements(
        order: OrderProjection,
        res: BatchResult,
        movement_type: MovementType,
        source: str,
        reason: Optional[str],
        actor_id: Optional[str],
        *,
        releasing: bool = False,
    ) -> Sequence[StockMovementRecord]:
        out: List[StockMovementRecord] = []
        for ln in res.applied_lines:
            if movement_type is MovementType.SALE:
                qty, before, after = -ln.quantity, ln.balance_before, ln.balance_after
            elif movement_type is MovementType.RETURN:
                qty, before, after = ln.quantity, ln.balance_before, ln.balance_after
            else:
                # RESERVE 口径是 reserved_stock；释放记负数
                qty = -ln.quantity if releasing else ln.quantity
                before, after = ln.reserved_before, ln.reserved_after
            out.append(
                StockMovementRecord(
                    variant_id=ln.variant_id,
                    movement_type=movement_type,
                    quantity=qty,
                    balance_before=before,
                    balance_after=after,
                    order_id=order.id,
                    source=source,
                    reason=reason,
                    created_by=actor_id,
                )
            )
        return out

    @staticmethod
    def _skip(order: OrderProjection, action: InventoryAction, reason: str) -> InventoryOutcome:
        logger.info("inventory no-op: order=%s action=%s reason=%s", order.id, action.value, reason)
        INVENTORY_TRIGGERS.labels(action=action.value, result="skipped").inc()
        return InventoryOutcome(action=action, success=True, skipped=True, reason=reason)

    @staticmethod
    def _failed(
        order: OrderProjection,
        action: InventoryAction,
        error: str,
        failed_variant_ids: Sequence[int],
        *,
        commitment_after: Optional[StockCommitment] = None,
    ) -> InventoryOutcome:
        logger.error(
            "inventory %s FAILED: order=%s error=%s failed_variants=%s (needs reconciliation)",
            action.value,
            order.id,
            error,
            list(failed_variant_ids),
        )
        INVENTORY_TRIGGERS.labels(action=action.value, result="failed").inc()
        return InventoryOutcome(
            action=action,
            success=False,
            error=error,
            commitment_after=commitment_after,
            failed_variant_ids=tuple(failed_variant_ids),
        )
