# tests/unit/test_role_lock.py
from __future__ import annotations

import pytest

from app.models.enums import FulfillmentType, OrderStatus
from app.services.order_workflow_types import ActorContext, OrderProjection
from app.services.workflow_errors import AccessDeniedReason, RejectionCode
from app.services.workflow_role_lock import WRONG_RIDER_MESSAGE, check_role_lock, lock_state

S = OrderStatus

ADMIN = ActorContext.of("a1", "admin")
MANAGER = ActorContext.of("m1", "manager")
OPERATOR = ActorContext.of("o1", "operator")
R1 = ActorContext.of("R1", "rider")
R2 = ActorContext.of("R2", "rider")
VIEWER = ActorContext.of("v1", "viewer")


def _order(status, rider_id=None, channel=FulfillmentType.LOCAL_DELIVERY):
    return OrderProjection(id=1, status=status, fulfillment_type=channel, rider_id=rider_id)


def test_admin_bypasses_everything():
    order = _order(S.OUT_FOR_DELIVERY, rider_id="R1")
    assert check_role_lock(order, S.DELIVERED, ADMIN) is None


def test_assigned_rider_may_progress():
    order = _order(S.ASSIGNED, rider_id="R1")
    assert check_role_lock(order, S.OUT_FOR_DELIVERY, R1) is None


def test_other_rider_is_refused_regardless_of_target():
    """另一位骑手：不管目标状态是什么都拒绝，原因是 WRONG_ASSIGNED_RIDER。"""
    order = _order(S.OUT_FOR_DELIVERY, rider_id="R1")
    for target in (S.DELIVERED, S.REJECTED, S.ASSIGNED):
        rej = check_role_lock(order, target, R2)
        assert rej is not None
        assert rej.code is RejectionCode.ACCESS_DENIED
        assert rej.access_reason is AccessDeniedReason.WRONG_ASSIGNED_RIDER
        assert rej.message == WRONG_RIDER_MESSAGE


def test_rider_on_locked_status_without_rider_is_refused():
    order = _order(S.ASSIGNED, rider_id=None)
    rej = check_role_lock(order, S.OUT_FOR_DELIVERY, R1)
    assert rej is not None
    assert rej.access_reason is AccessDeniedReason.WRONG_ASSIGNED_RIDER


def test_manager_cannot_touch_rider_locked_status():
    order = _order(S.OUT_FOR_DELIVERY, rider_id="R1")
    rej = check_role_lock(order, S.DELIVERED, MANAGER)
    assert rej is not None
    assert rej.access_reason is AccessDeniedReason.ROLE_MISMATCH
    assert rej.locked_to == "rider"


def test_courier_lock_admits_manager_only():
    order = _order(S.IN_TRANSIT, channel=FulfillmentType.THIRD_PARTY_COURIER)
    assert check_role_lock(order, S.DELIVERED, MANAGER) is None
    rej = check_role_lock(order, S.DELIVERED, OPERATOR)
    assert rej is not None
    assert rej.locked_to == "courier_system"


@pytest.mark.parametrize(
    "status,target,ok",
    [
        (S.INTAKE, S.CONVERTED, True),
        (S.CONVERTED, S.PACKED, True),
        (S.PACKED, S.ASSIGNED, True),
        (S.PACKED, S.CANCELLED, True),
        # 操作员的子集里没有 delivered → return_initiated
        (S.DELIVERED, S.RETURN_INITIATED, False),
        (S.REJECTED, S.RETURNED, False),
    ],
)
def test_operator_subset(status, target, ok):
    rej = check_role_lock(_order(status), target, OPERATOR)
    assert (rej is None) is ok


def test_rider_subset_is_strict():
    order = _order(S.OUT_FOR_DELIVERY, rider_id="R1")
    # 邻接表允许 out_for_delivery → assigned，但骑手子集里没有
    rej = check_role_lock(order, S.ASSIGNED, R1)
    assert rej is not None
    assert rej.locked_to == "role_restriction"


def test_viewer_can_do_nothing():
    rej = check_role_lock(_order(S.INTAKE), S.CONVERTED, VIEWER)
    assert rej is not None
    assert rej.code is RejectionCode.ACCESS_DENIED


def test_lock_state_for_ui():
    order = _order(S.OUT_FOR_DELIVERY, rider_id="R1")

    st = lock_state(order, R2)
    assert st.is_locked and not st.can_update
    assert st.locked_to == "specific_rider"

    st = lock_state(order, MANAGER)
    assert st.is_locked and st.locked_to == "rider"

    st = lock_state(order, R1)
    assert not st.is_locked and st.can_update

    st = lock_state(order, ADMIN)
    assert not st.is_locked and st.can_update

    st = lock_state(_order(S.INTAKE), VIEWER)
    assert not st.is_locked and not st.can_update
