# app/api/problem.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, TypedDict

from fastapi import HTTPException

from app.services.workflow_errors import OrderNotFound, RejectionCode, TransitionRejected, WorkflowError


class ProblemDetail(TypedDict, total=False):
    # 必填
    type: str  # validation|transition|access|missing_field|shortage|state
    # 可选：用于行内定位
    path: str  # e.g. lines[2]
    # 常用字段（按需）
    reason: str
    field: str
    variant_id: int
    sku: Optional[str]

    requested: int
    available: int
    shortage: int
    current_stock: int
    reserved_stock: int


class NextAction(TypedDict, total=False):
    action: str
    label: str


@dataclass(frozen=True)
class Problem:
    error_code: str
    message: str
    http_status: int
    context: Optional[Dict[str, Any]] = None
    details: Optional[List[ProblemDetail]] = None
    next_actions: Optional[List[NextAction]] = None
    trace_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        if self.context:
            out["context"] = self.context
        if self.details:
            out["details"] = self.details
        if self.next_actions:
            out["next_actions"] = self.next_actions
        if self.trace_id:
            out["trace_id"] = self.trace_id
        return out


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    next_actions: Optional[Sequence[NextAction]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    p = Problem(
        error_code=str(error_code),
        message=str(message),
        http_status=int(status_code),
        context=context,
        details=list(details) if details else None,
        next_actions=list(next_actions) if next_actions else None,
        trace_id=trace_id,
    )
    return p.to_dict()


def raise_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    trace_id: Optional[str] = None,
) -> None:
    raise HTTPException(
        status_code=int(status_code),
        detail=make_problem(
            status_code=int(status_code),
            error_code=error_code,
            message=message,
            context=context,
            details=details,
            trace_id=trace_id,
        ),
    )


# ---------------------------------------------------------------------------
# 工作流异常 → Problem
# ---------------------------------------------------------------------------

REJECTION_HTTP_STATUS: Dict[str, int] = {
    RejectionCode.INVALID_TRANSITION.value: 409,
    RejectionCode.ACCESS_DENIED.value: 403,
    RejectionCode.MISSING_REQUIRED_FIELDS.value: 422,
    RejectionCode.INSUFFICIENT_STOCK.value: 409,
    OrderNotFound.code: 404,
}

# 前端按 ui_hint 弹对应的补录框
_NEXT_ACTION_LABELS: Dict[str, str] = {
    "SELECT_RIDER": "Select a rider",
    "SELECT_COURIER": "Select a courier partner",
    "CANCEL_ORDER": "Enter a cancellation reason",
    "REJECT_ORDER": "Enter a rejection reason",
    "INITIATE_RETURN": "Enter a return reason",
    "ADD_ITEMS": "Add at least one item",
}


def _rejection_details(exc: TransitionRejected) -> List[ProblemDetail]:
    rej = exc.rejection
    if rej.code is RejectionCode.MISSING_REQUIRED_FIELDS:
        return [
            {"type": "missing_field", "field": f, "reason": f"{f} is required"}
            for f in rej.missing_fields
        ]
    if rej.code is RejectionCode.INSUFFICIENT_STOCK:
        return [
            {
                "type": "shortage",
                "variant_id": s.variant_id,
                "sku": s.sku,
                "requested": s.requested,
                "available": s.available,
                "shortage": s.shortage,
                "current_stock": s.current_stock,
                "reserved_stock": s.reserved_stock,
                "reason": s.message,
            }
            for s in rej.insufficient_items
        ]
    if rej.code is RejectionCode.ACCESS_DENIED:
        return [{"type": "access", "reason": rej.access_reason.value if rej.access_reason else "ROLE_MISMATCH"}]
    return [{"type": "transition", "reason": rej.message}]


def problem_for_workflow_error(
    exc: WorkflowError,
    *,
    context: Optional[Dict[str, Any]] = None,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    ctx: Dict[str, Any] = dict(context or {})
    if isinstance(exc, TransitionRejected):
        body = exc.to_dict()
        body.pop("valid", None)
        body.pop("message", None)
        body.pop("insufficient_items", None)
        code = body.pop("code")
        ctx.update(body)
        hint = exc.rejection.ui_hint
        actions: List[NextAction] = []
        if hint in _NEXT_ACTION_LABELS:
            actions.append({"action": hint, "label": _NEXT_ACTION_LABELS[hint]})
        return make_problem(
            status_code=REJECTION_HTTP_STATUS.get(code, 409),
            error_code=code,
            message=str(exc),
            context=ctx,
            details=_rejection_details(exc),
            next_actions=actions,
            trace_id=trace_id,
        )

    if isinstance(exc, OrderNotFound):
        ctx["order_id"] = exc.order_id
        return make_problem(
            status_code=404,
            error_code=OrderNotFound.code,
            message=str(exc),
            context=ctx,
            trace_id=trace_id,
        )

    return make_problem(
        status_code=409,
        error_code="WORKFLOW_ERROR",
        message=str(exc),
        context=ctx,
        details=[{"type": "state", "reason": str(exc)}],
        trace_id=trace_id,
    )
