# app/services/transition_validator.py
"""
状态迁移校验器。

固定顺序，任一步失败立即返回结构化拒绝，不做任何写入：

  1) 邻接表（本渠道自己的表）
  2) 角色 / 锁
  3) 派送必填字段（payload 或订单上已有的非空值都算）
  4) 进入 packed 时的库存检查（STRICT 阻断 / SOFT 只警告）

读库存失败时降级为警告放行；真正的扣减失败在执行器里报告，不在这里。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple

from app.domain.ports import StockLedgerGateway
from app.models.enums import OrderStatus, StockCommitment
from app.services.order_workflow_types import ActorContext, OrderProjection, WorkflowWarning
from app.services.stock_policy import STOCK_UNVERIFIED_MESSAGE, evaluate_stock, resolve_stock_policy
from app.services.workflow_errors import (
    TransitionRejection,
    insufficient_stock,
    invalid_transition,
    missing_fields,
)
from app.services.workflow_role_lock import check_role_lock
from app.services.workflow_rules import DISPATCH_REQUIREMENTS, allowed_next, ordered

logger = logging.getLogger("ordflow.workflow")


@dataclass(frozen=True)
class TransitionCheck:
    allowed: bool
    warnings: Tuple[WorkflowWarning, ...] = ()
    rejection: Optional[TransitionRejection] = None


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def resolve_field(
    name: str,
    supplied: Mapping[str, Any],
    order: OrderProjection,
    aliases: Tuple[str, ...] = (),
) -> Any:
    """payload 优先，其次别名，最后订单上已有的值。"""
    for key in (name, *aliases):
        v = supplied.get(key)
        if _present(v):
            return v
    v = order.field_value(name)
    return v if _present(v) else None


def missing_dispatch_fields(
    target: OrderStatus,
    supplied: Mapping[str, Any],
    order: OrderProjection,
) -> List[str]:
    req = DISPATCH_REQUIREMENTS.get(target)
    if req is None:
        return []
    return [
        f
        for f in req.required_fields
        if resolve_field(f, supplied, order, req.aliases.get(f, ())) is None
    ]


class TransitionValidator:
    def __init__(self, ledger: StockLedgerGateway, *, stock_check_on_pack: bool = True) -> None:
        self.ledger = ledger
        self.stock_check_on_pack = stock_check_on_pack

    async def validate(
        self,
        order: OrderProjection,
        target: OrderStatus,
        actor: ActorContext,
        supplied: Optional[Mapping[str, Any]] = None,
    ) -> TransitionCheck:
        supplied = supplied or {}
        channel = order.fulfillment_type

        # 1) 邻接
        nxt = allowed_next(order.status, channel)
        if target not in nxt:
            allowed = [s.value for s in ordered(nxt)]
            return self._reject(
                order,
                target,
                actor,
                invalid_transition(
                    f"Cannot transition from '{order.status.value}' to '{target.value}' "
                    f"for {channel.value} orders. Allowed: {', '.join(allowed) or 'none'}",
                    allowed,
                ),
            )

        # 2) 角色 / 锁
        rej = check_role_lock(order, target, actor)
        if rej is not None:
            return self._reject(order, target, actor, rej)

        # 3) 派送要求
        missing = missing_dispatch_fields(target, supplied, order)
        if missing:
            req = DISPATCH_REQUIREMENTS[target]
            return self._reject(
                order,
                target,
                actor,
                missing_fields(
                    req.error_message or f"Missing required fields: {', '.join(missing)}",
                    missing,
                    req.ui_hint,
                ),
            )

        # 4) 库存
        warnings: List[WorkflowWarning] = []
        if target is OrderStatus.PACKED and self.stock_check_on_pack:
            rej = await self._check_stock_for_pack(order, warnings)
            if rej is not None:
                return self._reject(order, target, actor, rej)

        logger.info(
            "transition allowed: order=%s %s -> %s actor=%s/%s warnings=%d",
            order.id,
            order.status.value,
            target.value,
            actor.role.value,
            actor.user_id,
            len(warnings),
        )
        return TransitionCheck(allowed=True, warnings=tuple(warnings))

    async def _check_stock_for_pack(
        self,
        order: OrderProjection,
        warnings: List[WorkflowWarning],
    ) -> Optional[TransitionRejection]:
        # 已扣减过（例如 assigned 退回 packed）不再检查
        if order.stock_commitment is StockCommitment.DEDUCTED or not order.lines:
            return None

        policy = resolve_stock_policy(OrderStatus.PACKED, order.fulfillment_type)
        variant_ids = sorted({ln.variant_id for ln in order.lines})
        try:
            levels = await self.ledger.read_available(variant_ids)
        except Exception as e:
            logger.warning("stock check unavailable: order=%s err=%s", order.id, e)
            warnings.append(
                WorkflowWarning(
                    code="STOCK_CHECK_UNAVAILABLE",
                    message=STOCK_UNVERIFIED_MESSAGE,
                    details={"error": str(e)},
                )
            )
            return None

        ev = evaluate_stock(
            order.lines,
            levels,
            policy,
            own_reserved=order.stock_commitment is StockCommitment.RESERVED,
        )
        if ev.blocked:
            return insufficient_stock(ev.shortfalls)
        if not ev.ok:
            logger.warning(
                "stock shortfall tolerated: order=%s mode=%s items=%s",
                order.id,
                policy.mode.value,
                [s.variant_id for s in ev.shortfalls],
            )
            warnings.extend(ev.warnings())
        return None

    @staticmethod
    def _reject(
        order: OrderProjection,
        target: OrderStatus,
        actor: ActorContext,
        rejection: TransitionRejection,
    ) -> TransitionCheck:
        logger.info(
            "transition rejected: order=%s %s -> %s actor=%s/%s code=%s",
            order.id,
            order.status.value,
            target.value,
            actor.role.value,
            actor.user_id,
            rejection.code.value,
        )
        return TransitionCheck(allowed=False, rejection=rejection)
