# app/services/workflow_errors.py
"""
工作流拒绝 / 错误分类：

- INVALID_TRANSITION        邻接表不允许
- ACCESS_DENIED             角色 / 锁校验失败，细分 ROLE_MISMATCH / WRONG_ASSIGNED_RIDER
- MISSING_REQUIRED_FIELDS   缺派送必填字段（附字段清单 + UI 提示）
- INSUFFICIENT_STOCK        STRICT 模式库存不足（附逐行缺口）

以上四类都发生在任何写入之前，调用方可直接重试。
库存触发失败（InventoryTriggerFailure）发生在状态落库之后，只在执行器内部抛出，
对外以 InventoryOutcome(success=False) 报告，不走异常通道。
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.services.order_workflow_types import StockShortfall


class RejectionCode(StrEnum):
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ACCESS_DENIED = "ACCESS_DENIED"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


class AccessDeniedReason(StrEnum):
    ROLE_MISMATCH = "ROLE_MISMATCH"
    WRONG_ASSIGNED_RIDER = "WRONG_ASSIGNED_RIDER"


@dataclass(frozen=True)
class TransitionRejection:
    """校验器给出的结构化拒绝；服务层原样透传，不做二次解释。"""

    code: RejectionCode
    message: str
    allowed: Tuple[str, ...] = ()
    access_reason: Optional[AccessDeniedReason] = None
    locked_to: Optional[str] = None
    missing_fields: Tuple[str, ...] = ()
    ui_hint: Optional[str] = None
    insufficient_items: Tuple[StockShortfall, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "valid": False,
            "code": self.code.value,
            "message": self.message,
        }
        if self.code is RejectionCode.INVALID_TRANSITION:
            out["allowed"] = list(self.allowed)
        if self.access_reason is not None:
            out["reason"] = self.access_reason.value
            out["locked_to"] = self.locked_to
        if self.missing_fields:
            out["missing_fields"] = list(self.missing_fields)
            out["ui_hint"] = self.ui_hint
        if self.insufficient_items:
            out["insufficient_items"] = [i.to_dict() for i in self.insufficient_items]
        return out


# ---------------------------------------------------------------------------
# 异常
# ---------------------------------------------------------------------------


class WorkflowError(Exception):
    pass


class OrderNotFound(WorkflowError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: int) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class TransitionRejected(WorkflowError):
    """携带 TransitionRejection 的异常基类；按 code 选择子类见 exception_for。"""

    def __init__(self, rejection: TransitionRejection) -> None:
        super().__init__(rejection.message)
        self.rejection = rejection

    @property
    def code(self) -> str:
        return self.rejection.code.value

    def to_dict(self) -> Dict[str, Any]:
        return self.rejection.to_dict()


class InvalidTransition(TransitionRejected):
    pass


class AccessDenied(TransitionRejected):
    pass


class RoleMismatch(AccessDenied):
    pass


class WrongAssignedRider(AccessDenied):
    pass


class MissingRequiredFields(TransitionRejected):
    @property
    def missing_fields(self) -> List[str]:
        return list(self.rejection.missing_fields)


class InsufficientStock(TransitionRejected):
    @property
    def insufficient_items(self) -> List[StockShortfall]:
        return list(self.rejection.insufficient_items)


def exception_for(rejection: TransitionRejection) -> TransitionRejected:
    code = rejection.code
    if code is RejectionCode.INVALID_TRANSITION:
        return InvalidTransition(rejection)
    if code is RejectionCode.ACCESS_DENIED:
        if rejection.access_reason is AccessDeniedReason.WRONG_ASSIGNED_RIDER:
            return WrongAssignedRider(rejection)
        return RoleMismatch(rejection)
    if code is RejectionCode.MISSING_REQUIRED_FIELDS:
        return MissingRequiredFields(rejection)
    if code is RejectionCode.INSUFFICIENT_STOCK:
        return InsufficientStock(rejection)
    return TransitionRejected(rejection)


class InventoryTriggerFailure(WorkflowError):
    """库存动作失败（状态已落库）。只在执行器内部使用。"""

    def __init__(self, message: str, *, failed_variant_ids: Sequence[int] = ()) -> None:
        super().__init__(message)
        self.failed_variant_ids: Tuple[int, ...] = tuple(failed_variant_ids)


# ---------------------------------------------------------------------------
# 构造器
# ---------------------------------------------------------------------------


def invalid_transition(message: str, allowed: Sequence[str] = ()) -> TransitionRejection:
    return TransitionRejection(
        code=RejectionCode.INVALID_TRANSITION, message=message, allowed=tuple(allowed)
    )


def access_denied(
    message: str,
    *,
    reason: AccessDeniedReason = AccessDeniedReason.ROLE_MISMATCH,
    locked_to: Optional[str] = None,
) -> TransitionRejection:
    return TransitionRejection(
        code=RejectionCode.ACCESS_DENIED,
        message=message,
        access_reason=reason,
        locked_to=locked_to,
    )


def missing_fields(
    message: str, fields: Sequence[str], ui_hint: Optional[str] = None
) -> TransitionRejection:
    return TransitionRejection(
        code=RejectionCode.MISSING_REQUIRED_FIELDS,
        message=message,
        missing_fields=tuple(fields),
        ui_hint=ui_hint,
    )


def insufficient_stock(items: Sequence[StockShortfall], *, prefix: str = "Cannot Pack") -> TransitionRejection:
    listing = ", ".join(f"{i.sku or i.variant_id} (need {i.requested}, have {i.available})" for i in items)
    return TransitionRejection(
        code=RejectionCode.INSUFFICIENT_STOCK,
        message=f"{prefix}: Insufficient stock for: {listing}",
        insufficient_items=tuple(items),
    )
