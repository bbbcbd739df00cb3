# app/services/order_workflow_service.py
"""
订单工作流服务（对外门面）。

单次迁移流程：
  1) 读订单投影
  2) 校验器（邻接 → 角色/锁 → 派送字段 → 库存）
  3) 拒绝：原样抛出 TransitionRejected 子类，不做二次解释
  4) 通过：写状态 + 业务字段 → 库存触发 → 写承诺 / 对账标记 → 审计
  5) 返回刷新后的订单

状态写入和库存动作不在同一事务里：库存失败不回滚状态，
只标记 needs_reconciliation 并在返回值里给出 INVENTORY_TRIGGER_FAILED 警告。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from app.core.audit import TraceContext, ensure_trace
from app.domain.ports import AuditSink, OrderRecordStore, StockLedgerGateway
from app.metrics import CREATIONS, TRANSITIONS
from app.models.enums import (
    PRE_FULFILLMENT_STATUSES,
    TERMINAL_STATUSES,
    ActorRole,
    FulfillmentType,
    InventoryAction,
    OrderStatus,
    StockCommitAction,
    StockCommitment,
    StockValidationMode,
)
from app.services.inventory_trigger import SOURCE_CREATE, InventoryTriggerExecutor
from app.services.order_workflow_types import (
    ActorContext,
    AuditEvent,
    BulkUpdateResult,
    CreateOrderOutcome,
    InventoryOutcome,
    NewOrder,
    OrderDraft,
    OrderLineSnapshot,
    OrderProjection,
    TransitionOutcome,
    WorkflowWarning,
)
from app.services.stock_policy import (
    BACKORDER_WARNING,
    STOCK_UNVERIFIED_MESSAGE,
    evaluate_stock,
    resolve_stock_policy,
)
from app.services.transition_validator import TransitionValidator, resolve_field
from app.services.workflow_errors import (
    OrderNotFound,
    WorkflowError,
    access_denied,
    exception_for,
    insufficient_stock,
    invalid_transition,
    missing_fields,
)
from app.services.workflow_role_lock import check_role_lock, lock_state
from app.services.workflow_rules import (
    DISPATCH_REQUIREMENTS,
    TRANSITION_RULES,
    allowed_next,
    ordered,
)

logger = logging.getLogger("ordflow.workflow")

S = OrderStatus

EVENT_ORDER_CREATED = "ORDER_CREATED"
EVENT_STATUS_CHANGED = "STATUS_CHANGED"
EVENT_INVENTORY_TRIGGER = "INVENTORY_TRIGGER"
EVENT_ROUTING_UPDATED = "ROUTING_UPDATED"

CREATOR_ROLES = frozenset({ActorRole.ADMIN, ActorRole.MANAGER, ActorRole.OPERATOR})
ROUTING_EDITOR_ROLES = CREATOR_ROLES

_CREATABLE = frozenset({S.INTAKE, S.FOLLOW_UP, S.CONVERTED, S.HOLD, S.PACKED})
# 门店柜台销售可以直接以 delivered 落单
_CREATABLE_IN_STORE = frozenset({S.INTAKE, S.CONVERTED, S.PACKED, S.DELIVERED})

ROUTING_FIELDS = ("courier_partner", "tracking_code", "destination_branch", "delivery_variant")

# 目标状态 → 需要从 payload 写入订单的业务字段
_STATUS_PAYLOAD_FIELDS: Mapping[OrderStatus, Sequence[str]] = {
    S.FOLLOW_UP: ("followup_reason",),
    S.ASSIGNED: ("rider_id",),
    S.HANDOVER_TO_COURIER: ROUTING_FIELDS,
    S.CANCELLED: ("cancellation_reason",),
    S.REJECTED: ("rejection_reason",),
    S.RETURN_INITIATED: ("return_reason",),
    S.RETURNED: ("return_reason",),
}

_STATUS_TIMESTAMPS: Mapping[OrderStatus, str] = {
    S.ASSIGNED: "assigned_at",
    S.OUT_FOR_DELIVERY: "dispatched_at",
    S.HANDOVER_TO_COURIER: "handed_over_at",
    S.DELIVERED: "delivered_at",
    S.CANCELLED: "cancelled_at",
    S.RETURNED: "returned_at",
}


def creatable_statuses(fulfillment_type: FulfillmentType) -> frozenset[OrderStatus]:
    if fulfillment_type is FulfillmentType.IN_STORE:
        return _CREATABLE_IN_STORE
    return _CREATABLE


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(v: Any) -> Decimal:
    return Decimal(str(v or 0)).quantize(Decimal("0.01"))


class OrderWorkflowService:
    def __init__(
        self,
        *,
        orders: OrderRecordStore,
        ledger: StockLedgerGateway,
        audit: AuditSink,
        stock_check_on_pack: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.orders = orders
        self.ledger = ledger
        self.audit = audit
        self.clock = clock
        self.validator = TransitionValidator(ledger, stock_check_on_pack=stock_check_on_pack)
        self.inventory = InventoryTriggerExecutor(ledger)

    # ------------------------------------------------------------------
    # 具名操作
    # ------------------------------------------------------------------

    async def assign_rider(
        self, order_id: int, rider_id: str, *, actor: ActorContext, trace: Optional[TraceContext] = None
    ) -> TransitionOutcome:
        return await self.update_status(order_id, S.ASSIGNED, {"rider_id": rider_id}, actor=actor, trace=trace)

    async def mark_out_for_delivery(
        self, order_id: int, *, actor: ActorContext, trace: Optional[TraceContext] = None
    ) -> TransitionOutcome:
        return await self.update_status(order_id, S.OUT_FOR_DELIVERY, actor=actor, trace=trace)

    async def handover_to_courier(
        self,
        order_id: int,
        courier_partner: Optional[str],
        *,
        actor: ActorContext,
        tracking_code: Optional[str] = None,
        destination_branch: Optional[str] = None,
        delivery_variant: Optional[str] = None,
        trace: Optional[TraceContext] = None,
    ) -> TransitionOutcome:
        payload = {
            "courier_partner": courier_partner,
            "tracking_code": tracking_code,
            "destination_branch": destination_branch,
            "delivery_variant": delivery_variant,
        }
        return await self.update_status(order_id, S.HANDOVER_TO_COURIER, payload, actor=actor, trace=trace)

    async def mark_delivered(
        self, order_id: int, *, actor: ActorContext, trace: Optional[TraceContext] = None
    ) -> TransitionOutcome:
        return await self.update_status(order_id, S.DELIVERED, actor=actor, trace=trace)

    async def mark_returned(
        self,
        order_id: int,
        reason: Optional[str] = None,
        *,
        actor: ActorContext,
        trace: Optional[TraceContext] = None,
    ) -> TransitionOutcome:
        return await self.update_status(order_id, S.RETURNED, {"reason": reason}, actor=actor, trace=trace)

    async def cancel_order(
        self,
        order_id: int,
        reason: Optional[str],
        *,
        actor: ActorContext,
        trace: Optional[TraceContext] = None,
    ) -> TransitionOutcome:
        return await self.update_status(order_id, S.CANCELLED, {"reason": reason}, actor=actor, trace=trace)

    async def bulk_update_status(
        self,
        order_ids: Sequence[int],
        status: OrderStatus,
        reason: Optional[str] = None,
        *,
        actor: ActorContext,
        trace: Optional[TraceContext] = None,
    ) -> BulkUpdateResult:
        """逐单走单条路径；单张失败只记录，不中断整批。"""
        trace = ensure_trace(trace, f"bulk:{status.value}")
        result = BulkUpdateResult()
        payload = {"reason": reason} if reason else {}
        for oid in order_ids:
            try:
                await self.update_status(oid, status, payload, actor=actor, trace=trace)
            except WorkflowError as e:
                result.failed.append({"id": oid, "code": getattr(e, "code", "WORKFLOW_ERROR"), "reason": str(e)})
            except Exception as e:
                logger.exception("bulk update crashed on order=%s", oid)
                result.failed.append({"id": oid, "code": "INTERNAL_ERROR", "reason": str(e)})
            else:
                result.succeeded.append(oid)

        logger.info(
            "bulk %s: succeeded=%d failed=%d trace=%s",
            status.value,
            len(result.succeeded),
            len(result.failed),
            trace.trace_id,
        )
        return result

    # ------------------------------------------------------------------
    # 单条迁移
    # ------------------------------------------------------------------

    async def update_status(
        self,
        order_id: int,
        status: OrderStatus,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        actor: ActorContext,
        trace: Optional[TraceContext] = None,
    ) -> TransitionOutcome:
        trace = ensure_trace(trace, f"transition:{status.value}")
        payload = {k: v for k, v in (payload or {}).items() if v is not None}
        order = await self._load(order_id)

        check = await self.validator.validate(order, status, actor, payload)
        if not check.allowed:
            TRANSITIONS.labels(
                channel=order.fulfillment_type.value, to_status=status.value, result="rejected"
            ).inc()
            raise exception_for(check.rejection)

        fields = self._transition_fields(order, status, payload)
        await self.orders.write_status(order.id, fields)

        # 状态已落库；从这里开始的库存失败只报告，不回滚
        warnings: List[WorkflowWarning] = list(check.warnings)
        inv = await self.inventory.run(order, status, actor)
        warnings.extend(await self._settle_inventory(order, inv))

        await self._emit(
            order,
            EVENT_STATUS_CHANGED,
            actor,
            trace,
            old_status=order.status.value,
            new_status=status.value,
            description=f"Status changed from {order.status.value} to {status.value}",
            meta={k: str(v) for k, v in fields.items() if k != "status"},
        )
        if not inv.skipped:
            await self._emit_inventory(order, inv, actor, trace)

        TRANSITIONS.labels(
            channel=order.fulfillment_type.value,
            to_status=status.value,
            result="ok" if inv.success else "inventory_failed",
        ).inc()
        logger.info(
            "order %s: %s -> %s by %s/%s trace=%s",
            order.id,
            order.status.value,
            status.value,
            actor.role.value,
            actor.user_id,
            trace.trace_id,
        )

        refreshed = await self._load(order_id)
        return TransitionOutcome(
            order=refreshed,
            from_status=order.status,
            to_status=status,
            warnings=tuple(warnings),
            inventory=inv,
        )

    def _transition_fields(
        self,
        order: OrderProjection,
        target: OrderStatus,
        payload: Mapping[str, Any],
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"status": target}

        req = DISPATCH_REQUIREMENTS.get(target)
        for name in _STATUS_PAYLOAD_FIELDS.get(target, ()):
            aliases = req.aliases.get(name, ()) if req is not None else ()
            if name == "return_reason" and target is S.RETURNED:
                aliases = ("reason",)
            for key in (name, *aliases):
                if key in payload:
                    fields[name] = payload[key]
                    break

        ts = _STATUS_TIMESTAMPS.get(target)
        if ts is not None:
            fields[ts] = self.clock()

        # 骑手退回打包区：解除骑手分配
        if target is S.PACKED and order.status is S.ASSIGNED:
            fields["rider_id"] = None
            fields["assigned_at"] = None
        return fields

    async def _settle_inventory(self, order: OrderProjection, inv: InventoryOutcome) -> List[WorkflowWarning]:
        """把库存结果落到订单上：承诺推进，以及缺货 / 待对账标记。"""
        post: Dict[str, Any] = {}
        if inv.commitment_after is not None and inv.commitment_after is not order.stock_commitment:
            post["stock_commitment"] = inv.commitment_after
        warnings: List[WorkflowWarning] = list(inv.warnings)
        if inv.backorder and not order.is_backorder:
            post["is_backorder"] = True
        if not inv.success:
            post["needs_reconciliation"] = True
            warnings.append(
                WorkflowWarning(
                    code="INVENTORY_TRIGGER_FAILED",
                    message=(
                        f"Status updated but inventory {inv.action.value} failed; "
                        "manual stock reconciliation required."
                    ),
                    details=inv.to_dict(),
                )
            )
        if post:
            await self.orders.write_status(order.id, post)
        return warnings

    # ------------------------------------------------------------------
    # 下单
    # ------------------------------------------------------------------

    async def create_order(
        self,
        new: NewOrder,
        *,
        actor: ActorContext,
        trace: Optional[TraceContext] = None,
    ) -> CreateOrderOutcome:
        trace = ensure_trace(trace, "create_order")
        channel = new.fulfillment_type

        if actor.role not in CREATOR_ROLES:
            CREATIONS.labels(channel=channel.value, result="rejected").inc()
            raise exception_for(
                access_denied(
                    f"Your role ({actor.role.value}) cannot create orders.",
                    locked_to="role_restriction",
                )
            )
        if not new.lines:
            CREATIONS.labels(channel=channel.value, result="rejected").inc()
            raise exception_for(
                missing_fields("Order must contain at least one line item.", ["lines"], "ADD_ITEMS")
            )
        allowed = creatable_statuses(channel)
        if new.status not in allowed:
            CREATIONS.labels(channel=channel.value, result="rejected").inc()
            raise exception_for(
                invalid_transition(
                    f"Cannot create {channel.value} order in status '{new.status.value}'.",
                    [s.value for s in ordered(allowed)],
                )
            )

        lines = tuple(
            OrderLineSnapshot(
                variant_id=ln.variant_id,
                quantity=int(ln.quantity),
                unit_price=_money(ln.unit_price),
                unit_cost=_money(ln.unit_cost),
                line_total=_money(ln.line_total),
                sku=ln.sku,
            )
            for ln in new.lines
        )

        policy = resolve_stock_policy(new.status, channel)
        warnings: List[WorkflowWarning] = []
        is_backorder = False
        if policy.mode is not StockValidationMode.NONE:
            try:
                levels = await self.ledger.read_available(sorted({ln.variant_id for ln in lines}))
            except Exception as e:
                logger.warning("stock check unavailable on create: err=%s", e)
                warnings.append(
                    WorkflowWarning(
                        code="STOCK_CHECK_UNAVAILABLE",
                        message=STOCK_UNVERIFIED_MESSAGE,
                        details={"error": str(e)},
                    )
                )
            else:
                ev = evaluate_stock(lines, levels, policy)
                if ev.blocked:
                    CREATIONS.labels(channel=channel.value, result="rejected").inc()
                    raise exception_for(insufficient_stock(ev.shortfalls, prefix="Cannot create order"))
                if not ev.ok:
                    warnings.extend(ev.warnings())
                    if policy.commit is StockCommitAction.RESERVE:
                        is_backorder = True
                        warnings.append(BACKORDER_WARNING)

        subtotal = sum((ln.line_total for ln in lines), Decimal("0.00"))
        discount = _money(new.discount_amount)
        shipping = _money(new.shipping_charges)
        total = max(subtotal - discount + shipping, Decimal("0.00"))

        draft = OrderDraft(
            order_number=new.order_number or self._order_number(),
            status=new.status,
            fulfillment_type=channel,
            lines=lines,
            subtotal=subtotal,
            discount_amount=discount,
            shipping_charges=shipping,
            total_amount=total,
            is_backorder=is_backorder,
            rider_id=new.rider_id,
            courier_partner=new.courier_partner,
            destination_branch=new.destination_branch,
            delivery_variant=new.delivery_variant,
            internal_notes=new.internal_notes,
        )
        created = await self.orders.create_order(draft)

        inv: Optional[InventoryOutcome] = None
        if policy.commit is not StockCommitAction.NONE:
            action = InventoryAction.RESERVE if policy.commit is StockCommitAction.RESERVE else InventoryAction.DEDUCT
            inv = await self.inventory.apply(
                created,
                action,
                actor,
                reason=f"Order {created.order_number} created",
                source=SOURCE_CREATE,
            )
            warnings.extend(await self._settle_inventory(created, inv))

        await self._emit(
            created,
            EVENT_ORDER_CREATED,
            actor,
            trace,
            new_status=created.status.value,
            description=f"Order {created.order_number} created as {created.status.value}",
            meta={
                "fulfillment_type": channel.value,
                "total_amount": str(total),
                "is_backorder": is_backorder,
                "lines": len(lines),
            },
        )
        if inv is not None and not inv.skipped:
            await self._emit_inventory(created, inv, actor, trace)

        CREATIONS.labels(channel=channel.value, result="ok").inc()
        logger.info(
            "order created: id=%s number=%s status=%s channel=%s warnings=%d",
            created.id,
            created.order_number,
            created.status.value,
            channel.value,
            len(warnings),
        )
        return CreateOrderOutcome(order=await self._load(created.id), warnings=tuple(warnings), inventory=inv)

    @staticmethod
    def _order_number() -> str:
        return f"ORD-{_utcnow():%Y%m%d}-{uuid4().hex[:8].upper()}"

    # ------------------------------------------------------------------
    # 路由修正
    # ------------------------------------------------------------------

    async def update_routing(
        self,
        order_id: int,
        changes: Mapping[str, Any],
        *,
        actor: ActorContext,
        trace: Optional[TraceContext] = None,
    ) -> OrderProjection:
        """
        修改快递 / 运单 / 网点 / 派送方式；fulfillment_type 只在尚未占用库存、
        且仍处于 intake / follow_up 时可改。
        """
        if actor.role not in ROUTING_EDITOR_ROLES:
            raise exception_for(
                access_denied(
                    f"Your role ({actor.role.value}) cannot update order routing.",
                    locked_to="role_restriction",
                )
            )
        order = await self._load(order_id)
        if order.status in TERMINAL_STATUSES:
            raise exception_for(
                invalid_transition(f"Order is {order.status.value}; routing can no longer be changed.")
            )

        fields: Dict[str, Any] = {}
        for name in ROUTING_FIELDS:
            if name in changes and changes[name] != order.field_value(name):
                fields[name] = changes[name]

        raw_ft = changes.get("fulfillment_type")
        if raw_ft is not None:
            try:
                new_ft = FulfillmentType(raw_ft)
            except ValueError:
                raise exception_for(
                    invalid_transition(
                        f"Unknown fulfillment type: {raw_ft!r}",
                        allowed=[ft.value for ft in FulfillmentType],
                    )
                ) from None
            if new_ft is not order.fulfillment_type:
                self._check_channel_change(order, new_ft)
                fields["fulfillment_type"] = new_ft

        if not fields:
            return order

        await self.orders.write_status(order.id, fields)
        trace = ensure_trace(trace, "update_routing")
        await self._emit(
            order,
            EVENT_ROUTING_UPDATED,
            actor,
            trace,
            old_status=order.status.value,
            new_status=order.status.value,
            description="Routing updated: " + ", ".join(sorted(fields)),
            meta={k: str(v) for k, v in fields.items()},
        )
        logger.info("order %s routing updated by %s: %s", order.id, actor.user_id, sorted(fields))
        return await self._load(order_id)

    @staticmethod
    def _check_channel_change(order: OrderProjection, new_ft: FulfillmentType) -> None:
        if order.stock_commitment is not StockCommitment.NONE or order.status not in PRE_FULFILLMENT_STATUSES:
            raise exception_for(
                invalid_transition(
                    f"Cannot change fulfillment type once the order is {order.status.value} "
                    f"(stock {order.stock_commitment.value})."
                )
            )
        if order.status not in TRANSITION_RULES[new_ft]:
            raise exception_for(
                invalid_transition(
                    f"Status '{order.status.value}' does not exist for {new_ft.value} orders."
                )
            )

    # ------------------------------------------------------------------
    # UI 辅助
    # ------------------------------------------------------------------

    async def describe_workflow(self, order_id: int, *, actor: ActorContext) -> Dict[str, Any]:
        order = await self._load(order_id)
        nxt = ordered(allowed_next(order.status, order.fulfillment_type))
        lock = lock_state(order, actor)
        actor_next = [s for s in nxt if check_role_lock(order, s, actor) is None]

        requirements: Dict[str, Any] = {}
        for s in nxt:
            req = DISPATCH_REQUIREMENTS.get(s)
            if req is None:
                continue
            requirements[s.value] = {
                "required_fields": list(req.required_fields),
                "optional_fields": list(req.optional_fields),
                "missing_fields": [
                    f for f in req.required_fields if resolve_field(f, {}, order) is None
                ],
                "error_message": req.error_message or None,
                "ui_hint": req.ui_hint,
            }

        return {
            "order_id": order.id,
            "status": order.status.value,
            "fulfillment_type": order.fulfillment_type.value,
            "stock_commitment": order.stock_commitment.value,
            "allowed_next": [s.value for s in nxt],
            "actor_allowed_next": [s.value for s in actor_next],
            "is_locked": lock.is_locked,
            "lock_message": lock.message,
            "locked_to": lock.locked_to,
            "can_update": lock.can_update and bool(actor_next),
            "requirements": requirements,
        }

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    async def _load(self, order_id: int) -> OrderProjection:
        order = await self.orders.read_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def _emit(
        self,
        order: OrderProjection,
        event: str,
        actor: ActorContext,
        trace: TraceContext,
        *,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        description: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.audit.emit(
            AuditEvent(
                order_id=order.id,
                event=event,
                actor_id=actor.user_id,
                actor_role=actor.role.value,
                old_status=old_status,
                new_status=new_status,
                description=description,
                meta=dict(meta or {}),
                trace_id=trace.trace_id,
            )
        )

    async def _emit_inventory(
        self,
        order: OrderProjection,
        inv: InventoryOutcome,
        actor: ActorContext,
        trace: TraceContext,
    ) -> None:
        verdict = "applied" if inv.success else "FAILED (needs reconciliation)"
        await self._emit(
            order,
            EVENT_INVENTORY_TRIGGER,
            actor,
            trace,
            description=f"Inventory {inv.action.value} {verdict}",
            meta=inv.to_dict(),
        )
