# tests/unit/test_workflow_rules.py
from __future__ import annotations

import pytest

from app.models.enums import FulfillmentType, InventoryAction, OrderStatus
from app.services.workflow_rules import (
    DISPATCH_REQUIREMENTS,
    INVENTORY_TRIGGERS,
    ROLE_PERMISSIONS,
    STATUS_LOCKS,
    TRANSITION_RULES,
    allowed_next,
    is_allowed,
    ordered,
)

S = OrderStatus
LD = FulfillmentType.LOCAL_DELIVERY
TP = FulfillmentType.THIRD_PARTY_COURIER
IS = FulfillmentType.IN_STORE


def test_every_channel_has_a_table():
    assert set(TRANSITION_RULES) == set(FulfillmentType)


@pytest.mark.parametrize(
    "channel,status,expected",
    [
        (LD, S.INTAKE, {S.FOLLOW_UP, S.CONVERTED, S.CANCELLED}),
        (LD, S.FOLLOW_UP, {S.FOLLOW_UP, S.CONVERTED, S.HOLD, S.CANCELLED}),
        (LD, S.CONVERTED, {S.PACKED, S.HOLD, S.CANCELLED}),
        (LD, S.HOLD, {S.CONVERTED, S.PACKED, S.CANCELLED}),
        (LD, S.PACKED, {S.ASSIGNED, S.CANCELLED}),
        (LD, S.ASSIGNED, {S.OUT_FOR_DELIVERY, S.PACKED, S.CANCELLED}),
        (LD, S.OUT_FOR_DELIVERY, {S.DELIVERED, S.REJECTED, S.RETURN_INITIATED, S.ASSIGNED}),
        (LD, S.DELIVERED, {S.RETURN_INITIATED}),
        (LD, S.REJECTED, {S.RETURN_INITIATED, S.RETURNED}),
        (LD, S.RETURN_INITIATED, {S.RETURNED}),
        (TP, S.PACKED, {S.HANDOVER_TO_COURIER, S.CANCELLED}),
        (TP, S.HANDOVER_TO_COURIER, {S.IN_TRANSIT, S.DELIVERED, S.RETURN_INITIATED}),
        (TP, S.IN_TRANSIT, {S.DELIVERED, S.RETURN_INITIATED}),
        (IS, S.INTAKE, {S.CONVERTED, S.STORE_SALE, S.CANCELLED}),
        (IS, S.CONVERTED, {S.PACKED, S.STORE_SALE, S.CANCELLED}),
        (IS, S.PACKED, {S.STORE_SALE, S.CANCELLED}),
        (IS, S.STORE_SALE, {S.DELIVERED}),
        (IS, S.DELIVERED, {S.RETURN_INITIATED}),
    ],
)
def test_adjacency_is_exact(channel, status, expected):
    assert allowed_next(status, channel) == frozenset(expected)


@pytest.mark.parametrize("channel", list(FulfillmentType))
@pytest.mark.parametrize("terminal", [S.RETURNED, S.CANCELLED])
def test_terminal_statuses_have_no_exits(channel, terminal):
    assert allowed_next(terminal, channel) == frozenset()


def test_adjacency_is_channel_scoped():
    """同一个状态名在别的渠道里不可用，不能借道。"""
    assert not is_allowed(S.PACKED, S.ASSIGNED, TP)
    assert not is_allowed(S.PACKED, S.HANDOVER_TO_COURIER, LD)
    assert not is_allowed(S.PACKED, S.STORE_SALE, LD)
    # in_store 没有 follow_up / hold / assigned
    assert allowed_next(S.FOLLOW_UP, IS) == frozenset()
    assert allowed_next(S.ASSIGNED, IS) == frozenset()
    # 快递渠道没有 rejected 这一步
    assert S.REJECTED not in allowed_next(S.IN_TRANSIT, TP)
    assert allowed_next(S.REJECTED, TP) == frozenset()


def test_cancel_reachable_until_rider_leaves():
    """assigned 仍可取消；出车以后只能走 rejected / 退货。"""
    for channel, table in TRANSITION_RULES.items():
        for status, nxt in table.items():
            if S.CANCELLED in nxt:
                assert status in {S.INTAKE, S.FOLLOW_UP, S.CONVERTED, S.HOLD, S.PACKED, S.ASSIGNED}, (channel, status)
    assert is_allowed(S.ASSIGNED, S.CANCELLED, LD)
    assert not is_allowed(S.OUT_FOR_DELIVERY, S.CANCELLED, LD)


def test_ordered_follows_enum_declaration():
    assert ordered({S.CANCELLED, S.INTAKE, S.PACKED}) == (S.INTAKE, S.PACKED, S.CANCELLED)


def test_rules_are_read_only():
    with pytest.raises(TypeError):
        TRANSITION_RULES[LD] = {}  # type: ignore[index]
    with pytest.raises(TypeError):
        STATUS_LOCKS[S.INTAKE] = STATUS_LOCKS[S.ASSIGNED]  # type: ignore[index]


def test_role_permission_flags():
    from app.models.enums import ActorRole

    assert ROLE_PERMISSIONS[ActorRole.ADMIN].can_bypass_locks
    assert not ROLE_PERMISSIONS[ActorRole.MANAGER].can_bypass_locks
    assert ROLE_PERMISSIONS[ActorRole.MANAGER].allowed_transitions is None
    assert ROLE_PERMISSIONS[ActorRole.RIDER].must_be_assigned_rider
    assert ROLE_PERMISSIONS[ActorRole.VIEWER].allowed_transitions == {}


def test_dispatch_requirements():
    assert DISPATCH_REQUIREMENTS[S.ASSIGNED].required_fields == ("rider_id",)
    assert DISPATCH_REQUIREMENTS[S.ASSIGNED].ui_hint == "SELECT_RIDER"
    assert DISPATCH_REQUIREMENTS[S.HANDOVER_TO_COURIER].required_fields == ("courier_partner",)
    assert DISPATCH_REQUIREMENTS[S.FOLLOW_UP].required_fields == ()
    for s in (S.CANCELLED, S.REJECTED, S.RETURN_INITIATED):
        req = DISPATCH_REQUIREMENTS[s]
        (name,) = req.required_fields
        assert req.aliases[name] == ("reason",)


def test_inventory_trigger_table():
    assert INVENTORY_TRIGGERS[S.CONVERTED].action is InventoryAction.RESERVE
    assert INVENTORY_TRIGGERS[S.PACKED].action is InventoryAction.DEDUCT
    assert INVENTORY_TRIGGERS[S.RETURNED].action is InventoryAction.RESTORE
    assert INVENTORY_TRIGGERS[S.RETURNED].only_from is None
    assert INVENTORY_TRIGGERS[S.CANCELLED].only_from == frozenset({S.CONVERTED, S.PACKED, S.HOLD})
    assert INVENTORY_TRIGGERS[S.REJECTED].only_from == frozenset({S.OUT_FOR_DELIVERY, S.ASSIGNED, S.IN_TRANSIT})
    assert INVENTORY_TRIGGERS[S.STORE_SALE].action is InventoryAction.DEDUCT
    assert INVENTORY_TRIGGERS[S.STORE_SALE].only_from == frozenset({S.INTAKE, S.CONVERTED})
    # assigned 不在取消的恢复名单里
    assert S.ASSIGNED not in INVENTORY_TRIGGERS[S.CANCELLED].only_from
    assert S.DELIVERED not in INVENTORY_TRIGGERS
