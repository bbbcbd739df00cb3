# app/services/workflow_role_lock.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from app.models.enums import OrderStatus
from app.services.order_workflow_types import ActorContext, OrderProjection
from app.services.workflow_errors import AccessDeniedReason, TransitionRejection, access_denied
from app.services.workflow_rules import ROLE_PERMISSIONS, STATUS_LOCKS

logger = logging.getLogger("ordflow.workflow")

WRONG_RIDER_MESSAGE = "Access Denied: This order is assigned to a different rider."


@dataclass(frozen=True)
class LockState:
    is_locked: bool
    can_update: bool
    message: Optional[str] = None
    locked_to: Optional[str] = None


def _rider_identity_rejection(order: OrderProjection, actor: ActorContext) -> Optional[TransitionRejection]:
    """
    骑手身份锁：

    - 订单已分配骑手且不是本人 → WRONG_ASSIGNED_RIDER（不论目标状态）
    - 订单处于骑手锁状态但没有骑手 → 同样视为不是本人
    """
    if order.rider_id:
        if order.rider_id != actor.user_id:
            return access_denied(
                WRONG_RIDER_MESSAGE,
                reason=AccessDeniedReason.WRONG_ASSIGNED_RIDER,
                locked_to="specific_rider",
            )
        return None

    lock = STATUS_LOCKS.get(order.status)
    if lock is not None and lock.requires_assigned_user:
        return access_denied(
            WRONG_RIDER_MESSAGE,
            reason=AccessDeniedReason.WRONG_ASSIGNED_RIDER,
            locked_to="specific_rider",
        )
    return None


def check_role_lock(
    order: OrderProjection,
    target: OrderStatus,
    actor: ActorContext,
) -> Optional[TransitionRejection]:
    """
    角色 / 锁校验，返回 None 表示放行。

    顺序固定：
      1) admin 直接放行（必须在身份校验之前）
      2) 骑手身份锁
      3) 状态锁（allowed_roles）
      4) 角色级迁移子集
    """
    perms = ROLE_PERMISSIONS[actor.role]
    if perms.can_bypass_locks:
        return None

    if perms.must_be_assigned_rider:
        rej = _rider_identity_rejection(order, actor)
        if rej is not None:
            logger.info(
                "rider lock rejected: order=%s rider=%s actor=%s",
                order.id,
                order.rider_id,
                actor.user_id,
            )
            return rej

    lock = STATUS_LOCKS.get(order.status)
    if lock is not None and actor.role not in lock.allowed_roles:
        return access_denied(lock.message, locked_to=lock.locked_to)

    if perms.allowed_transitions is not None:
        allowed = perms.allowed_transitions.get(order.status, frozenset())
        if target not in allowed:
            return access_denied(
                f"Your role ({actor.role.value}) cannot transition orders "
                f"from '{order.status.value}' to '{target.value}'.",
                locked_to="role_restriction",
            )

    return None


def lock_state(order: OrderProjection, actor: ActorContext) -> LockState:
    """给 UI 用：当前操作人面对这张订单是否处于被锁状态。"""
    perms = ROLE_PERMISSIONS[actor.role]
    if perms.can_bypass_locks:
        return LockState(is_locked=False, can_update=True)

    if perms.must_be_assigned_rider:
        rej = _rider_identity_rejection(order, actor)
        if rej is not None:
            return LockState(is_locked=True, can_update=False, message=rej.message, locked_to=rej.locked_to)

    lock = STATUS_LOCKS.get(order.status)
    if lock is not None and actor.role not in lock.allowed_roles:
        return LockState(is_locked=True, can_update=False, message=lock.message, locked_to=lock.locked_to)

    can_update = True
    if perms.allowed_transitions is not None:
        can_update = bool(perms.allowed_transitions.get(order.status))
    return LockState(
        is_locked=False,
        can_update=can_update,
        locked_to=lock.locked_to if lock is not None else None,
    )
