# tests/unit/test_stock_policy.py
from __future__ import annotations

import pytest

from app.models.enums import FulfillmentType, OrderStatus, StockCommitAction, StockValidationMode
from app.services.order_workflow_types import OrderLineSnapshot, StockLevel
from app.services.stock_policy import evaluate_stock, resolve_stock_policy

S = OrderStatus
LD = FulfillmentType.LOCAL_DELIVERY


@pytest.mark.parametrize(
    "status,mode,commit",
    [
        (S.INTAKE, StockValidationMode.NONE, StockCommitAction.NONE),
        (S.FOLLOW_UP, StockValidationMode.NONE, StockCommitAction.NONE),
        (S.CONVERTED, StockValidationMode.SOFT, StockCommitAction.RESERVE),
        (S.HOLD, StockValidationMode.SOFT, StockCommitAction.RESERVE),
        (S.PACKED, StockValidationMode.STRICT, StockCommitAction.DEDUCT),
        (S.OUT_FOR_DELIVERY, StockValidationMode.STRICT, StockCommitAction.DEDUCT),
        (S.CANCELLED, StockValidationMode.NONE, StockCommitAction.NONE),
    ],
)
def test_delivery_policy_by_status(status, mode, commit):
    p = resolve_stock_policy(status, LD)
    assert (p.mode, p.commit) == (mode, commit)


def test_in_store_is_always_soft():
    for s in (S.INTAKE, S.CONVERTED, S.PACKED, S.STORE_SALE, S.DELIVERED):
        p = resolve_stock_policy(s, FulfillmentType.IN_STORE)
        assert p.mode is StockValidationMode.SOFT
        assert not p.blocks_on_shortfall
    assert resolve_stock_policy(S.CONVERTED, FulfillmentType.IN_STORE).commit is StockCommitAction.NONE
    assert resolve_stock_policy(S.DELIVERED, FulfillmentType.IN_STORE).commit is StockCommitAction.DEDUCT


def _line(vid, qty, sku=None):
    return OrderLineSnapshot(variant_id=vid, quantity=qty, sku=sku)


def test_strict_shortfall_blocks():
    policy = resolve_stock_policy(S.PACKED, LD)
    ev = evaluate_stock([_line(1, 7, "SKU-1")], {1: StockLevel(current=5, reserved=0)}, policy)
    assert ev.blocked
    (sf,) = ev.shortfalls
    assert sf.requested == 7
    assert sf.available == 5
    assert sf.shortage == 2
    assert "SKU-1" in sf.message


def test_soft_shortfall_warns_only():
    policy = resolve_stock_policy(S.CONVERTED, LD)
    ev = evaluate_stock([_line(1, 3)], {1: StockLevel(current=1, reserved=0)}, policy)
    assert not ev.ok
    assert not ev.blocked
    (w,) = ev.warnings()
    assert w.code == "STOCK_SHORTFALL"


def test_lines_for_same_variant_are_merged():
    policy = resolve_stock_policy(S.PACKED, LD)
    ev = evaluate_stock([_line(1, 3), _line(1, 3)], {1: StockLevel(current=5, reserved=0)}, policy)
    (sf,) = ev.shortfalls
    assert sf.requested == 6


def test_unknown_variant_counts_as_zero():
    policy = resolve_stock_policy(S.PACKED, LD)
    ev = evaluate_stock([_line(9, 1)], {}, policy)
    (sf,) = ev.shortfalls
    assert sf.available == 0
    assert sf.message.endswith("is out of stock")


def test_own_reservation_is_added_back():
    """自己预占的数量不能挡住自己打包。"""
    policy = resolve_stock_policy(S.PACKED, LD)
    levels = {1: StockLevel(current=5, reserved=5)}
    assert evaluate_stock([_line(1, 5)], levels, policy).blocked
    assert evaluate_stock([_line(1, 5)], levels, policy, own_reserved=True).ok
