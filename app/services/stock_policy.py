# app/services/stock_policy.py
"""
库存校验策略（按状态动态变化，不是全局开关）：

- intake / follow_up                 → NONE   + 不承诺库存
- converted / hold                   → SOFT   + 预占
- packed 及其下游配送状态            → STRICT + 扣减
- in_store 渠道                      → 永远 SOFT；packed / store_sale / delivered 扣减

下单、校验器的 packed 检查、执行器的 RESERVE 判断共用本模块，
避免多处口径不一致。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Mapping, Sequence, Tuple

from app.models.enums import FulfillmentType, OrderStatus, StockCommitAction, StockValidationMode
from app.services.order_workflow_types import OrderLineSnapshot, StockLevel, StockShortfall, WorkflowWarning

S = OrderStatus

STOCK_UNVERIFIED_MESSAGE = "Could not verify stock levels. Proceeding anyway."

# 预占数量超过可用库存：订单照常推进，只打缺货标记
BACKORDER_WARNING = WorkflowWarning(
    code="BACKORDER",
    message="Order placed as backorder: reserved quantity exceeds available stock.",
)


@dataclass(frozen=True)
class StockPolicy:
    mode: StockValidationMode
    commit: StockCommitAction

    @property
    def blocks_on_shortfall(self) -> bool:
        return self.mode is StockValidationMode.STRICT


_NONE = StockPolicy(StockValidationMode.NONE, StockCommitAction.NONE)
_SOFT_RESERVE = StockPolicy(StockValidationMode.SOFT, StockCommitAction.RESERVE)
_STRICT_DEDUCT = StockPolicy(StockValidationMode.STRICT, StockCommitAction.DEDUCT)

_POLICY_BY_STATUS: Mapping[OrderStatus, StockPolicy] = {
    S.INTAKE: _NONE,
    S.FOLLOW_UP: _NONE,
    S.CONVERTED: _SOFT_RESERVE,
    S.HOLD: _SOFT_RESERVE,
    S.PACKED: _STRICT_DEDUCT,
    S.ASSIGNED: _STRICT_DEDUCT,
    S.OUT_FOR_DELIVERY: _STRICT_DEDUCT,
    S.HANDOVER_TO_COURIER: _STRICT_DEDUCT,
    S.IN_TRANSIT: _STRICT_DEDUCT,
    S.STORE_SALE: _STRICT_DEDUCT,
    S.DELIVERED: _STRICT_DEDUCT,
}

_IN_STORE_DEDUCT_STATUSES = frozenset({S.PACKED, S.STORE_SALE, S.DELIVERED})


def resolve_stock_policy(status: OrderStatus, fulfillment_type: FulfillmentType) -> StockPolicy:
    if fulfillment_type is FulfillmentType.IN_STORE:
        # 柜台销售：货已经在顾客手里，不足也放行，只记录
        commit = StockCommitAction.DEDUCT if status in _IN_STORE_DEDUCT_STATUSES else StockCommitAction.NONE
        return StockPolicy(StockValidationMode.SOFT, commit)
    return _POLICY_BY_STATUS.get(status, _NONE)


@dataclass(frozen=True)
class StockEvaluation:
    policy: StockPolicy
    shortfalls: Tuple[StockShortfall, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.shortfalls

    @property
    def blocked(self) -> bool:
        return bool(self.shortfalls) and self.policy.blocks_on_shortfall

    def warnings(self) -> List[WorkflowWarning]:
        return [
            WorkflowWarning(code="STOCK_SHORTFALL", message=s.message, details=s.to_dict())
            for s in self.shortfalls
        ]


def _demand(lines: Sequence[OrderLineSnapshot]) -> dict[int, Tuple[int, str | None]]:
    """同一 variant 多行时合并数量。"""
    out: dict[int, Tuple[int, str | None]] = {}
    for ln in lines:
        qty, sku = out.get(ln.variant_id, (0, None))
        out[ln.variant_id] = (qty + int(ln.quantity), sku or ln.sku)
    return out


def evaluate_stock(
    lines: Sequence[OrderLineSnapshot],
    levels: Mapping[int, StockLevel],
    policy: StockPolicy,
    *,
    own_reserved: bool = False,
) -> StockEvaluation:
    """
    逐 variant 比较 requested 与 available。

    own_reserved=True：订单自己已经预占了这些数量，available 里要加回来，
    否则已预占订单打包时会被自己的预占挡住。
    """
    shortfalls: List[StockShortfall] = []
    for variant_id, (requested, sku) in _demand(lines).items():
        level = levels.get(variant_id) or StockLevel(current=0, reserved=0)
        available = level.available
        if own_reserved:
            available += min(requested, level.reserved)
        if available < requested:
            shortfalls.append(
                StockShortfall(
                    variant_id=variant_id,
                    requested=requested,
                    available=max(available, 0),
                    current_stock=level.current,
                    reserved_stock=level.reserved,
                    sku=sku,
                )
            )
    return StockEvaluation(policy=policy, shortfalls=tuple(shortfalls))
