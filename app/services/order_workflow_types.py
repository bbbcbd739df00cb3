# app/services/order_workflow_types.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from app.models.enums import (
    ActorRole,
    FulfillmentType,
    InventoryAction,
    MovementType,
    OrderStatus,
    StockCommitment,
)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class ActorContext:
    """单次调用的操作人（上游已完成鉴权，这里只拿 user_id + role）。"""

    user_id: str
    role: ActorRole

    @classmethod
    def of(cls, user_id: str, role: str | ActorRole) -> "ActorContext":
        r = role if isinstance(role, ActorRole) else ActorRole.parse(role)
        return cls(user_id=str(user_id), role=r)


@dataclass(frozen=True)
class OrderLineSnapshot:
    variant_id: int
    quantity: int
    unit_price: Decimal = _ZERO
    unit_cost: Decimal = _ZERO
    line_total: Decimal = _ZERO
    sku: Optional[str] = None


@dataclass(frozen=True)
class OrderProjection:
    """
    工作流需要的订单最小投影。

    引擎只读它，写入统一通过 OrderRecordStore.write_status(id, fields)。
    """

    id: int
    status: OrderStatus
    fulfillment_type: FulfillmentType
    lines: Tuple[OrderLineSnapshot, ...] = ()
    order_number: Optional[str] = None
    stock_commitment: StockCommitment = StockCommitment.NONE

    rider_id: Optional[str] = None
    courier_partner: Optional[str] = None
    tracking_code: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_variant: Optional[str] = None

    subtotal: Decimal = _ZERO
    discount_amount: Decimal = _ZERO
    shipping_charges: Decimal = _ZERO
    total_amount: Decimal = _ZERO

    is_backorder: bool = False
    needs_reconciliation: bool = False
    internal_notes: Optional[str] = None

    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_reason: Optional[str] = None
    followup_reason: Optional[str] = None

    assigned_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    handed_over_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None

    def field_value(self, name: str) -> Any:
        return getattr(self, name, None)

    def with_fields(self, fields: Mapping[str, Any]) -> "OrderProjection":
        known = {k: v for k, v in fields.items() if k in self.__dataclass_fields__}
        return replace(self, **known)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status.value
        out["fulfillment_type"] = self.fulfillment_type.value
        out["stock_commitment"] = self.stock_commitment.value
        for k in ("subtotal", "discount_amount", "shipping_charges", "total_amount"):
            out[k] = str(out[k])
        out["lines"] = [
            {
                "variant_id": ln.variant_id,
                "sku": ln.sku,
                "quantity": ln.quantity,
                "unit_price": str(ln.unit_price),
                "unit_cost": str(ln.unit_cost),
                "line_total": str(ln.line_total),
            }
            for ln in self.lines
        ]
        for k, v in list(out.items()):
            if isinstance(v, datetime):
                out[k] = v.isoformat()
        return out


# ---------------------------------------------------------------------------
# 库存台账网关的数据形状
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StockLevel:
    current: int
    reserved: int

    @property
    def available(self) -> int:
        return self.current - self.reserved


@dataclass(frozen=True)
class StockLine:
    variant_id: int
    quantity: int


@dataclass(frozen=True)
class LineResult:
    """
    批量库存操作的单行结果。

    balance_* 为 current_stock 前后值；reserved_* 为 reserved_stock 前后值。
    applied=False 表示这一行没有落账。
    """

    variant_id: int
    quantity: int
    applied: bool
    balance_before: int = 0
    balance_after: int = 0
    reserved_before: int = 0
    reserved_after: int = 0
    error: Optional[str] = None


@dataclass(frozen=True)
class BatchResult:
    success: bool
    lines: Tuple[LineResult, ...] = ()

    @property
    def failed_lines(self) -> List[LineResult]:
        return [ln for ln in self.lines if not ln.applied]

    @property
    def applied_lines(self) -> List[LineResult]:
        return [ln for ln in self.lines if ln.applied]


@dataclass(frozen=True)
class StockMovementRecord:
    variant_id: int
    movement_type: MovementType
    quantity: int
    balance_before: int
    balance_after: int
    order_id: Optional[int]
    source: str
    reason: Optional[str] = None
    created_by: Optional[str] = None


@dataclass(frozen=True)
class StockShortfall:
    variant_id: int
    requested: int
    available: int
    current_stock: int
    reserved_stock: int
    sku: Optional[str] = None

    @property
    def shortage(self) -> int:
        return self.requested - self.available

    @property
    def message(self) -> str:
        label = self.sku or f"variant#{self.variant_id}"
        if self.available <= 0:
            return f"{label} is out of stock"
        return f"{label} has only {self.available} available (need {self.requested})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "sku": self.sku,
            "requested": self.requested,
            "available": self.available,
            "current_stock": self.current_stock,
            "reserved_stock": self.reserved_stock,
            "shortage": self.shortage,
            "message": self.message,
        }


# ---------------------------------------------------------------------------
# 结果 / 警告
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowWarning:
    """
    不阻断流程的提示：

    - STOCK_SHORTFALL          SOFT / NONE 模式下库存不足
    - STOCK_CHECK_UNAVAILABLE  读库存失败，未校验直接放行
    - INVENTORY_TRIGGER_FAILED 状态已落库，但库存动作失败（需人工对账）
    - BACKORDER                预占时库存不足，订单标记为缺货单
    """

    code: str
    message: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


@dataclass(frozen=True)
class InventoryOutcome:
    action: InventoryAction
    success: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    commitment_after: Optional[StockCommitment] = None
    failed_variant_ids: Tuple[int, ...] = ()
    movements: int = 0
    # SOFT 口径下的缺货提示；backorder=True 表示预占超过了可用库存
    warnings: Tuple[WorkflowWarning, ...] = ()
    backorder: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "success": self.success,
            "skipped": self.skipped,
            "reason": self.reason,
            "error": self.error,
            "failed_variant_ids": list(self.failed_variant_ids),
            "movements": self.movements,
            "backorder": self.backorder,
        }


@dataclass(frozen=True)
class TransitionOutcome:
    order: OrderProjection
    from_status: OrderStatus
    to_status: OrderStatus
    warnings: Tuple[WorkflowWarning, ...] = ()
    inventory: Optional[InventoryOutcome] = None

    @property
    def inventory_failed(self) -> bool:
        return self.inventory is not None and not self.inventory.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": True,
            "order": self.order.to_dict(),
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "warnings": [w.to_dict() for w in self.warnings],
            "inventory": self.inventory.to_dict() if self.inventory else None,
        }


@dataclass
class BulkUpdateResult:
    succeeded: List[int] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"succeeded": list(self.succeeded), "failed": list(self.failed)}


# ---------------------------------------------------------------------------
# 下单
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NewOrderLine:
    variant_id: int
    quantity: int
    unit_price: Decimal = _ZERO
    unit_cost: Decimal = _ZERO
    discount_per_unit: Decimal = _ZERO
    sku: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return (Decimal(self.unit_price) - Decimal(self.discount_per_unit)) * int(self.quantity)


@dataclass(frozen=True)
class NewOrder:
    fulfillment_type: FulfillmentType
    lines: Sequence[NewOrderLine]
    status: OrderStatus = OrderStatus.INTAKE
    order_number: Optional[str] = None
    discount_amount: Decimal = _ZERO
    shipping_charges: Decimal = _ZERO
    rider_id: Optional[str] = None
    courier_partner: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_variant: Optional[str] = None
    internal_notes: Optional[str] = None


@dataclass(frozen=True)
class OrderDraft:
    """交给 OrderRecordStore.create_order 的落库数据（金额已算好）。"""

    order_number: str
    status: OrderStatus
    fulfillment_type: FulfillmentType
    lines: Tuple[OrderLineSnapshot, ...]
    subtotal: Decimal
    discount_amount: Decimal
    shipping_charges: Decimal
    total_amount: Decimal
    is_backorder: bool = False
    rider_id: Optional[str] = None
    courier_partner: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_variant: Optional[str] = None
    internal_notes: Optional[str] = None


@dataclass(frozen=True)
class CreateOrderOutcome:
    order: OrderProjection
    warnings: Tuple[WorkflowWarning, ...] = ()
    inventory: Optional[InventoryOutcome] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
            "inventory": self.inventory.to_dict() if self.inventory else None,
        }


# ---------------------------------------------------------------------------
# 审计
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditEvent:
    order_id: int
    event: str
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    description: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    trace_id: Optional[str] = None
