# app/api/routers/order_workflow.py
from __future__ import annotations

from typing import Annotated, Any, Dict

from fastapi import APIRouter, Depends, Path

from app.api.deps import get_actor, get_workflow_service
from app.api.routers.order_workflow_schemas import (
    AssignRiderIn,
    BulkStatusIn,
    BulkStatusOut,
    HandoverIn,
    OrderCreateIn,
    ReasonIn,
    RoutingUpdateIn,
    StatusUpdateIn,
)
from app.core.audit import new_trace
from app.services.order_workflow_service import OrderWorkflowService
from app.services.order_workflow_types import ActorContext

router = APIRouter(prefix="/orders", tags=["order-workflow"])

OrderId = Annotated[int, Path(ge=1)]


@router.post("", status_code=201)
async def create_order(
    payload: OrderCreateIn,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    out = await svc.create_order(payload.to_new_order(), actor=actor, trace=new_trace("http:/orders"))
    return out.to_dict()


@router.post("/bulk-status", response_model=BulkStatusOut)
async def bulk_status(
    payload: BulkStatusIn,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
):
    res = await svc.bulk_update_status(
        payload.order_ids,
        payload.status,
        payload.reason,
        actor=actor,
        trace=new_trace("http:/orders/bulk-status"),
    )
    return res.to_dict()


@router.post("/{order_id}/assign-rider")
async def assign_rider(
    payload: AssignRiderIn,
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    out = await svc.assign_rider(
        order_id, payload.rider_id, actor=actor, trace=new_trace(f"http:/orders/{order_id}/assign-rider")
    )
    return out.to_dict()


@router.post("/{order_id}/out-for-delivery")
async def out_for_delivery(
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    out = await svc.mark_out_for_delivery(
        order_id, actor=actor, trace=new_trace(f"http:/orders/{order_id}/out-for-delivery")
    )
    return out.to_dict()


@router.post("/{order_id}/handover")
async def handover(
    payload: HandoverIn,
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    out = await svc.handover_to_courier(
        order_id,
        payload.courier_partner,
        actor=actor,
        tracking_code=payload.tracking_code,
        destination_branch=payload.destination_branch,
        delivery_variant=payload.delivery_variant.value if payload.delivery_variant else None,
        trace=new_trace(f"http:/orders/{order_id}/handover"),
    )
    return out.to_dict()


@router.post("/{order_id}/deliver")
async def deliver(
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    out = await svc.mark_delivered(order_id, actor=actor, trace=new_trace(f"http:/orders/{order_id}/deliver"))
    return out.to_dict()


@router.post("/{order_id}/return")
async def mark_returned(
    payload: ReasonIn,
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    out = await svc.mark_returned(
        order_id, payload.reason, actor=actor, trace=new_trace(f"http:/orders/{order_id}/return")
    )
    return out.to_dict()


@router.post("/{order_id}/cancel")
async def cancel(
    payload: ReasonIn,
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    out = await svc.cancel_order(
        order_id, payload.reason, actor=actor, trace=new_trace(f"http:/orders/{order_id}/cancel")
    )
    return out.to_dict()


@router.post("/{order_id}/status")
async def update_status(
    payload: StatusUpdateIn,
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    out = await svc.update_status(
        order_id,
        payload.status,
        payload.payload(),
        actor=actor,
        trace=new_trace(f"http:/orders/{order_id}/status"),
    )
    return out.to_dict()


@router.patch("/{order_id}/routing")
async def update_routing(
    payload: RoutingUpdateIn,
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    order = await svc.update_routing(
        order_id, payload.changes(), actor=actor, trace=new_trace(f"http:/orders/{order_id}/routing")
    )
    return {"order": order.to_dict()}


@router.get("/{order_id}/workflow")
async def workflow_info(
    order_id: OrderId,
    actor: ActorContext = Depends(get_actor),
    svc: OrderWorkflowService = Depends(get_workflow_service),
) -> Dict[str, Any]:
    return await svc.describe_workflow(order_id, actor=actor)
