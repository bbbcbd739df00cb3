# app/api/routers/order_workflow_schemas.py
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.enums import DeliveryVariant, FulfillmentType, OrderStatus
from app.services.order_workflow_types import NewOrder, NewOrderLine


class OrderLineIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    variant_id: int
    quantity: int = Field(gt=0)
    sku: Optional[str] = None
    unit_price: Decimal = Decimal("0")
    unit_cost: Decimal = Decimal("0")
    discount_per_unit: Decimal = Decimal("0")


class OrderCreateIn(BaseModel):
    """lines 允许为空，由服务层给出 MISSING_REQUIRED_FIELDS（带 UI 提示）。"""

    model_config = ConfigDict(extra="ignore")

    fulfillment_type: FulfillmentType
    status: OrderStatus = OrderStatus.INTAKE
    lines: List[OrderLineIn] = Field(default_factory=list)
    order_number: Optional[str] = Field(default=None, max_length=32)
    discount_amount: Decimal = Decimal("0")
    shipping_charges: Decimal = Decimal("0")
    rider_id: Optional[str] = None
    courier_partner: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_variant: Optional[DeliveryVariant] = None
    internal_notes: Optional[str] = None

    def to_new_order(self) -> NewOrder:
        return NewOrder(
            fulfillment_type=self.fulfillment_type,
            status=self.status,
            lines=[
                NewOrderLine(
                    variant_id=ln.variant_id,
                    quantity=ln.quantity,
                    unit_price=ln.unit_price,
                    unit_cost=ln.unit_cost,
                    discount_per_unit=ln.discount_per_unit,
                    sku=ln.sku,
                )
                for ln in self.lines
            ],
            order_number=self.order_number,
            discount_amount=self.discount_amount,
            shipping_charges=self.shipping_charges,
            rider_id=self.rider_id,
            courier_partner=self.courier_partner,
            destination_branch=self.destination_branch,
            delivery_variant=self.delivery_variant.value if self.delivery_variant else None,
            internal_notes=self.internal_notes,
        )


class AssignRiderIn(BaseModel):
    rider_id: Optional[str] = None


class HandoverIn(BaseModel):
    courier_partner: Optional[str] = None
    tracking_code: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_variant: Optional[DeliveryVariant] = None


class ReasonIn(BaseModel):
    reason: Optional[str] = None


class StatusUpdateIn(BaseModel):
    """通用迁移：status + 该目标状态需要的字段（见 /workflow 的 requirements）。"""

    model_config = ConfigDict(extra="ignore")

    status: OrderStatus
    reason: Optional[str] = None
    rider_id: Optional[str] = None
    courier_partner: Optional[str] = None
    tracking_code: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_variant: Optional[DeliveryVariant] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_reason: Optional[str] = None
    followup_reason: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"status"}, exclude_none=True, mode="json")


class RoutingUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    fulfillment_type: Optional[FulfillmentType] = None
    courier_partner: Optional[str] = None
    tracking_code: Optional[str] = None
    destination_branch: Optional[str] = None
    delivery_variant: Optional[DeliveryVariant] = None

    def changes(self) -> Dict[str, Any]:
        # 只取显式传入的字段；显式传 null 表示清空
        return self.model_dump(exclude_unset=True, mode="json")


class BulkStatusIn(BaseModel):
    order_ids: List[int] = Field(min_length=1)
    status: OrderStatus
    reason: Optional[str] = None


class BulkStatusOut(BaseModel):
    succeeded: List[int]
    failed: List[Dict[str, Any]]
