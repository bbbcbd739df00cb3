# app/services/workflow_rules.py
"""
订单工作流静态规则表（进程级常量，初始化后只读）：

- TRANSITION_RULES        各渠道的状态邻接表
- ROLE_PERMISSIONS        角色能力 + 角色级可用迁移子集
- STATUS_LOCKS            被“锁定”到某类角色的状态
- DISPATCH_REQUIREMENTS   进入某状态前必须具备的字段
- INVENTORY_TRIGGERS      进入某状态后触发的库存动作

全部用 MappingProxyType + frozenset 表示，没有任何运行期修改入口；
校验逻辑见 transition_validator / workflow_role_lock / inventory_trigger。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple

from app.models.enums import (
    ActorRole,
    FulfillmentType,
    InventoryAction,
    OrderStatus,
)

S = OrderStatus


def _table(rows: Mapping[OrderStatus, Iterable[OrderStatus]]) -> Mapping[OrderStatus, frozenset[OrderStatus]]:
    return MappingProxyType({k: frozenset(v) for k, v in rows.items()})


# 各渠道共用的接单 / 处理阶段
_PRE_PACK_ROWS = {
    S.INTAKE: (S.FOLLOW_UP, S.CONVERTED, S.CANCELLED),
    S.FOLLOW_UP: (S.FOLLOW_UP, S.CONVERTED, S.HOLD, S.CANCELLED),
    S.CONVERTED: (S.PACKED, S.HOLD, S.CANCELLED),
    S.HOLD: (S.CONVERTED, S.PACKED, S.CANCELLED),
}

TRANSITION_RULES: Mapping[FulfillmentType, Mapping[OrderStatus, frozenset[OrderStatus]]] = MappingProxyType(
    {
        # 自有骑手：packed 之后必须先 assigned 才能出车
        FulfillmentType.LOCAL_DELIVERY: _table(
            {
                **_PRE_PACK_ROWS,
                S.PACKED: (S.ASSIGNED, S.CANCELLED),
                S.ASSIGNED: (S.OUT_FOR_DELIVERY, S.PACKED, S.CANCELLED),
                S.OUT_FOR_DELIVERY: (S.DELIVERED, S.REJECTED, S.RETURN_INITIATED, S.ASSIGNED),
                S.DELIVERED: (S.RETURN_INITIATED,),
                S.REJECTED: (S.RETURN_INITIATED, S.RETURNED),
                S.RETURN_INITIATED: (S.RETURNED,),
                S.RETURNED: (),
                S.CANCELLED: (),
            }
        ),
        # 第三方快递：packed 之后必须先交接快递
        FulfillmentType.THIRD_PARTY_COURIER: _table(
            {
                **_PRE_PACK_ROWS,
                S.PACKED: (S.HANDOVER_TO_COURIER, S.CANCELLED),
                S.HANDOVER_TO_COURIER: (S.IN_TRANSIT, S.DELIVERED, S.RETURN_INITIATED),
                S.IN_TRANSIT: (S.DELIVERED, S.RETURN_INITIATED),
                S.DELIVERED: (S.RETURN_INITIATED,),
                S.RETURN_INITIATED: (S.RETURNED,),
                S.RETURNED: (),
                S.CANCELLED: (),
            }
        ),
        # 门店：packed → store_sale → delivered 基本是瞬时完成；柜台现货可以跳过 packed
        FulfillmentType.IN_STORE: _table(
            {
                S.INTAKE: (S.CONVERTED, S.STORE_SALE, S.CANCELLED),
                S.CONVERTED: (S.PACKED, S.STORE_SALE, S.CANCELLED),
                S.PACKED: (S.STORE_SALE, S.CANCELLED),
                S.STORE_SALE: (S.DELIVERED,),
                S.DELIVERED: (S.RETURN_INITIATED,),
                S.RETURN_INITIATED: (S.RETURNED,),
                S.RETURNED: (),
                S.CANCELLED: (),
            }
        ),
    }
)

_STATUS_ORDER = {s: i for i, s in enumerate(OrderStatus)}


def ordered(statuses: Iterable[OrderStatus]) -> Tuple[OrderStatus, ...]:
    """按枚举声明顺序排序，保证提示信息 / 接口返回稳定。"""
    return tuple(sorted(statuses, key=_STATUS_ORDER.__getitem__))


def allowed_next(status: OrderStatus, fulfillment_type: FulfillmentType) -> frozenset[OrderStatus]:
    """只查本渠道自己的表；不存在的状态返回空集。"""
    return TRANSITION_RULES[fulfillment_type].get(status, frozenset())


def is_allowed(status: OrderStatus, target: OrderStatus, fulfillment_type: FulfillmentType) -> bool:
    return target in allowed_next(status, fulfillment_type)


# =============================================================================
# 角色
# =============================================================================


@dataclass(frozen=True)
class RolePermission:
    can_update_any_order: bool = False
    can_bypass_locks: bool = False
    must_be_assigned_rider: bool = False
    # None = 不按角色子集限制；空表 = 一律不允许
    allowed_transitions: Optional[Mapping[OrderStatus, frozenset[OrderStatus]]] = None


ROLE_PERMISSIONS: Mapping[ActorRole, RolePermission] = MappingProxyType(
    {
        ActorRole.ADMIN: RolePermission(can_update_any_order=True, can_bypass_locks=True),
        # 经理：能动任何订单，但绕不开骑手锁
        ActorRole.MANAGER: RolePermission(can_update_any_order=True),
        ActorRole.OPERATOR: RolePermission(
            allowed_transitions=_table(
                {
                    **_PRE_PACK_ROWS,
                    # 柜台成交：门店渠道里 intake / converted 可以直接 store_sale
                    S.INTAKE: (*_PRE_PACK_ROWS[S.INTAKE], S.STORE_SALE),
                    S.CONVERTED: (*_PRE_PACK_ROWS[S.CONVERTED], S.STORE_SALE),
                    S.PACKED: (S.ASSIGNED, S.HANDOVER_TO_COURIER, S.STORE_SALE, S.CANCELLED),
                    S.STORE_SALE: (S.DELIVERED,),
                }
            )
        ),
        ActorRole.RIDER: RolePermission(
            must_be_assigned_rider=True,
            allowed_transitions=_table(
                {
                    S.ASSIGNED: (S.OUT_FOR_DELIVERY,),
                    S.OUT_FOR_DELIVERY: (S.DELIVERED, S.REJECTED, S.RETURN_INITIATED),
                }
            ),
        ),
        ActorRole.VIEWER: RolePermission(allowed_transitions=_table({})),
    }
)


@dataclass(frozen=True)
class StatusLock:
    locked_to: str
    allowed_roles: frozenset[ActorRole]
    message: str
    requires_assigned_user: bool = False


RIDER_LOCK = "rider"
COURIER_LOCK = "courier_system"

STATUS_LOCKS: Mapping[OrderStatus, StatusLock] = MappingProxyType(
    {
        S.ASSIGNED: StatusLock(
            locked_to=RIDER_LOCK,
            allowed_roles=frozenset({ActorRole.RIDER, ActorRole.ADMIN}),
            message="Order is assigned to rider. Only the assigned rider or admin can update status.",
            requires_assigned_user=True,
        ),
        S.OUT_FOR_DELIVERY: StatusLock(
            locked_to=RIDER_LOCK,
            allowed_roles=frozenset({ActorRole.RIDER, ActorRole.ADMIN}),
            message="Order is out for delivery. Only the assigned rider or admin can update status.",
            requires_assigned_user=True,
        ),
        S.HANDOVER_TO_COURIER: StatusLock(
            locked_to=COURIER_LOCK,
            allowed_roles=frozenset({ActorRole.ADMIN, ActorRole.MANAGER}),
            message="Order is with courier. Updates require admin/manager approval.",
        ),
        S.IN_TRANSIT: StatusLock(
            locked_to=COURIER_LOCK,
            allowed_roles=frozenset({ActorRole.ADMIN, ActorRole.MANAGER}),
            message="Order is in transit with courier. Updates require admin/manager approval.",
        ),
    }
)


# =============================================================================
# 派送要求
# =============================================================================


@dataclass(frozen=True)
class DispatchRequirement:
    required_fields: Tuple[str, ...] = ()
    optional_fields: Tuple[str, ...] = ()
    # 字段别名：批量接口只带一个通用 reason
    aliases: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: MappingProxyType({}))
    error_message: str = ""
    ui_hint: Optional[str] = None


_REASON_ALIAS = ("reason",)

DISPATCH_REQUIREMENTS: Mapping[OrderStatus, DispatchRequirement] = MappingProxyType(
    {
        S.ASSIGNED: DispatchRequirement(
            required_fields=("rider_id",),
            error_message="Please select a rider to assign this order.",
            ui_hint="SELECT_RIDER",
        ),
        S.HANDOVER_TO_COURIER: DispatchRequirement(
            required_fields=("courier_partner",),
            optional_fields=("tracking_code", "destination_branch", "delivery_variant"),
            error_message="Please select a courier partner and enter tracking details.",
            ui_hint="SELECT_COURIER",
        ),
        S.FOLLOW_UP: DispatchRequirement(
            optional_fields=("followup_reason", "followup_date"),
            ui_hint="SCHEDULE_FOLLOWUP",
        ),
        S.CANCELLED: DispatchRequirement(
            required_fields=("cancellation_reason",),
            aliases=MappingProxyType({"cancellation_reason": _REASON_ALIAS}),
            error_message="Please provide a cancellation reason.",
            ui_hint="CANCEL_ORDER",
        ),
        S.REJECTED: DispatchRequirement(
            required_fields=("rejection_reason",),
            aliases=MappingProxyType({"rejection_reason": _REASON_ALIAS}),
            error_message="Please provide a rejection reason.",
            ui_hint="REJECT_ORDER",
        ),
        S.RETURN_INITIATED: DispatchRequirement(
            required_fields=("return_reason",),
            aliases=MappingProxyType({"return_reason": _REASON_ALIAS}),
            error_message="Please provide a return reason.",
            ui_hint="INITIATE_RETURN",
        ),
    }
)


# =============================================================================
# 库存触发
# =============================================================================


@dataclass(frozen=True)
class InventoryTrigger:
    action: InventoryAction
    description: str
    # None = 不限来源状态
    only_from: Optional[frozenset[OrderStatus]] = None


INVENTORY_TRIGGERS: Mapping[OrderStatus, InventoryTrigger] = MappingProxyType(
    {
        S.CONVERTED: InventoryTrigger(InventoryAction.RESERVE, "Reserve stock for confirmed order"),
        S.PACKED: InventoryTrigger(InventoryAction.DEDUCT, "Deduct stock - order is being packed"),
        # 门店柜台直接成交（跳过 packed）时在这里扣减；从 packed 过来的已经扣过
        S.STORE_SALE: InventoryTrigger(
            InventoryAction.DEDUCT,
            "Deduct stock - counter sale",
            only_from=frozenset({S.INTAKE, S.CONVERTED}),
        ),
        S.CANCELLED: InventoryTrigger(
            InventoryAction.RESTORE,
            "Restore stock for cancelled order",
            only_from=frozenset({S.CONVERTED, S.PACKED, S.HOLD}),
        ),
        S.REJECTED: InventoryTrigger(
            InventoryAction.RESTORE,
            "Restore stock for rejected order",
            only_from=frozenset({S.OUT_FOR_DELIVERY, S.ASSIGNED, S.IN_TRANSIT}),
        ),
        S.RETURNED: InventoryTrigger(InventoryAction.RESTORE, "Restore stock for returned order"),
    }
)
