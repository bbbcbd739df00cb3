# tests/api/test_order_workflow_api.py
from __future__ import annotations

import pytest

from app.models.enums import FulfillmentType, OrderStatus, StockCommitment

S = OrderStatus

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
OPERATOR = {"X-User-Id": "op-1", "X-User-Role": "operator"}
RIDER_1 = {"X-User-Id": "R1", "X-User-Role": "rider"}
RIDER_2 = {"X-User-Id": "R2", "X-User-Role": "rider"}


def _assert_problem_shape(obj: dict) -> None:
    assert isinstance(obj, dict)
    for k in ("error_code", "message", "http_status", "trace_id", "context"):
        assert k in obj, obj


@pytest.mark.asyncio
async def test_healthz(client):
    r = await client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


@pytest.mark.asyncio
async def test_actor_headers_required(client, make_order):
    order = make_order(S.INTAKE)
    r = await client.get(f"/orders/{order.id}/workflow")
    assert r.status_code == 401
    body = r.json()
    _assert_problem_shape(body)
    assert body["error_code"] == "ACTOR_REQUIRED"

    r = await client.get(f"/orders/{order.id}/workflow", headers={"X-User-Id": "x", "X-User-Role": "superuser"})
    assert r.status_code == 403
    assert r.json()["error_code"] == "UNKNOWN_ROLE"


@pytest.mark.asyncio
async def test_create_and_progress(client, ledger):
    r = await client.post(
        "/orders",
        headers=OPERATOR,
        json={
            "fulfillment_type": "local_delivery",
            "status": "converted",
            "lines": [{"variant_id": 101, "quantity": 2, "unit_price": "15.00"}],
            "shipping_charges": "5",
        },
    )
    assert r.status_code == 201, r.text
    body = r.json()
    order = body["order"]
    assert order["status"] == "converted"
    assert order["stock_commitment"] == "reserved"
    assert order["total_amount"] == "35.00"
    oid = order["id"]

    r = await client.post(f"/orders/{oid}/status", headers=OPERATOR, json={"status": "packed"})
    assert r.status_code == 200, r.text
    assert r.json()["to_status"] == "packed"

    r = await client.post(f"/orders/{oid}/assign-rider", headers=OPERATOR, json={"rider_id": "R1"})
    assert r.status_code == 200, r.text
    assert r.json()["order"]["rider_id"] == "R1"

    r = await client.post(f"/orders/{oid}/out-for-delivery", headers=RIDER_1)
    assert r.status_code == 200, r.text

    r = await client.post(f"/orders/{oid}/deliver", headers=RIDER_1)
    assert r.status_code == 200, r.text
    assert r.json()["order"]["status"] == "delivered"
    assert ledger.level(101).current == 8


@pytest.mark.asyncio
async def test_invalid_transition_is_409(client, make_order):
    order = make_order(S.INTAKE)
    r = await client.post(f"/orders/{order.id}/deliver", headers=ADMIN)
    assert r.status_code == 409
    body = r.json()
    _assert_problem_shape(body)
    assert body["error_code"] == "INVALID_TRANSITION"
    assert body["context"]["allowed"] == ["follow_up", "converted", "cancelled"]
    assert body["context"]["path"] == f"/orders/{order.id}/deliver"


@pytest.mark.asyncio
async def test_wrong_rider_is_403(client, make_order):
    order = make_order(S.OUT_FOR_DELIVERY, rider_id="R1", stock_commitment=StockCommitment.DEDUCTED)
    r = await client.post(f"/orders/{order.id}/deliver", headers=RIDER_2)
    assert r.status_code == 403
    body = r.json()
    assert body["error_code"] == "ACCESS_DENIED"
    assert body["context"]["reason"] == "WRONG_ASSIGNED_RIDER"
    assert body["message"] == "Access Denied: This order is assigned to a different rider."


@pytest.mark.asyncio
async def test_missing_fields_is_422_with_next_action(client, make_order):
    order = make_order(S.PACKED, stock_commitment=StockCommitment.DEDUCTED)
    r = await client.post(f"/orders/{order.id}/assign-rider", headers=OPERATOR, json={})
    assert r.status_code == 422
    body = r.json()
    assert body["error_code"] == "MISSING_REQUIRED_FIELDS"
    assert body["context"]["missing_fields"] == ["rider_id"]
    assert body["context"]["ui_hint"] == "SELECT_RIDER"
    assert body["next_actions"] == [{"action": "SELECT_RIDER", "label": "Select a rider"}]
    assert body["details"][0] == {"type": "missing_field", "field": "rider_id", "reason": "rider_id is required"}


@pytest.mark.asyncio
async def test_insufficient_stock_is_409_with_details(client, make_order):
    order = make_order(S.CONVERTED, lines=((102, 7),))
    r = await client.post(f"/orders/{order.id}/status", headers=ADMIN, json={"status": "packed"})
    assert r.status_code == 409
    body = r.json()
    assert body["error_code"] == "INSUFFICIENT_STOCK"
    (d,) = body["details"]
    assert d["type"] == "shortage"
    assert (d["variant_id"], d["requested"], d["available"], d["shortage"]) == (102, 7, 5, 2)


@pytest.mark.asyncio
async def test_unknown_order_is_404(client):
    r = await client.post("/orders/999999/cancel", headers=ADMIN, json={"reason": "x"})
    assert r.status_code == 404
    body = r.json()
    assert body["error_code"] == "ORDER_NOT_FOUND"
    assert body["context"]["order_id"] == 999999


@pytest.mark.asyncio
async def test_request_validation_is_problem(client):
    r = await client.post(
        "/orders",
        headers=ADMIN,
        json={"fulfillment_type": "drone", "lines": [{"variant_id": 1, "quantity": 0}]},
    )
    assert r.status_code == 422
    body = r.json()
    _assert_problem_shape(body)
    assert body["error_code"] == "request_validation_error"
    paths = {d["path"] for d in body["details"]}
    assert "fulfillment_type" in paths
    assert "lines.0.quantity" in paths


@pytest.mark.asyncio
async def test_bulk_status_reports_partial_failures(client, make_order):
    a = make_order(S.INTAKE)
    b = make_order(S.DELIVERED, stock_commitment=StockCommitment.DEDUCTED)
    c = make_order(S.FOLLOW_UP)
    r = await client.post(
        "/orders/bulk-status",
        headers=ADMIN,
        json={"order_ids": [a.id, b.id, c.id], "status": "cancelled", "reason": "cleanup"},
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["succeeded"] == [a.id, c.id]
    assert [f["id"] for f in body["failed"]] == [b.id]


@pytest.mark.asyncio
async def test_handover_and_routing(client, make_order):
    order = make_order(S.PACKED, fulfillment_type=FulfillmentType.THIRD_PARTY_COURIER, stock_commitment=StockCommitment.DEDUCTED)
    r = await client.post(
        f"/orders/{order.id}/handover",
        headers=OPERATOR,
        json={"courier_partner": "Leopards", "tracking_code": "LP-1", "delivery_variant": "home"},
    )
    assert r.status_code == 200, r.text
    assert r.json()["order"]["delivery_variant"] == "home"

    r = await client.patch(f"/orders/{order.id}/routing", headers=ADMIN, json={"tracking_code": "LP-2"})
    assert r.status_code == 200, r.text
    assert r.json()["order"]["tracking_code"] == "LP-2"

    r = await client.patch(f"/orders/{order.id}/routing", headers=ADMIN, json={"order_number": "hack"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_return_flow(client, make_order, ledger):
    ledger.set_stock(101, 8)
    order = make_order(S.DELIVERED, lines=((101, 2),), stock_commitment=StockCommitment.DEDUCTED)
    r = await client.post(
        f"/orders/{order.id}/status", headers=ADMIN, json={"status": "return_initiated", "reason": "damaged"}
    )
    assert r.status_code == 200, r.text
    assert r.json()["order"]["return_reason"] == "damaged"

    r = await client.post(f"/orders/{order.id}/return", headers=ADMIN, json={"reason": "received back"})
    assert r.status_code == 200, r.text
    assert r.json()["inventory"]["action"] == "RESTORE"
    assert ledger.level(101).current == 10


@pytest.mark.asyncio
async def test_workflow_info_endpoint(client, make_order):
    order = make_order(S.PACKED, stock_commitment=StockCommitment.DEDUCTED)
    r = await client.get(f"/orders/{order.id}/workflow", headers=OPERATOR)
    assert r.status_code == 200
    body = r.json()
    assert body["allowed_next"] == ["assigned", "cancelled"]
    assert body["requirements"]["assigned"]["ui_hint"] == "SELECT_RIDER"


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_counters(client, make_order):
    order = make_order(S.INTAKE)
    await client.post(f"/orders/{order.id}/status", headers=ADMIN, json={"status": "follow_up"})
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "order_transitions_total" in r.text
