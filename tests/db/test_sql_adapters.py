# tests/db/test_sql_adapters.py
from __future__ import annotations

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from app.adapters.order_store_sql import SqlOrderStore
from app.adapters.stock_ledger_sql import SqlStockLedger
from app.models.audit_event import OrderAuditEvent
from app.models.enums import FulfillmentType, MovementType, OrderStatus, StockCommitment
from app.models.product_variant import ProductVariant
from app.models.stock_movement import StockMovement
from app.services.audit_writer import AuditEventWriter
from app.services.order_workflow_service import OrderWorkflowService
from app.services.order_workflow_types import NewOrder, NewOrderLine, StockLevel, StockLine
from app.services.workflow_errors import InsufficientStock

S = OrderStatus


@pytest_asyncio.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        session.add_all(
            [
                ProductVariant(id=1, sku="TEE-M", current_stock=10, reserved_stock=0),
                ProductVariant(id=2, sku="CAP", current_stock=5, reserved_stock=0),
            ]
        )
        await session.commit()
    return session_factory


@pytest.fixture
def sql_service(seeded):
    return OrderWorkflowService(
        orders=SqlOrderStore(seeded),
        ledger=SqlStockLedger(seeded),
        audit=AuditEventWriter(seeded),
    )


@pytest.mark.asyncio
async def test_ledger_batches_are_atomic(seeded):
    ledger = SqlStockLedger(seeded)

    res = await ledger.reserve_batch(7, [StockLine(1, 3), StockLine(2, 1)])
    assert res.success
    levels = await ledger.read_available([1, 2, 99])
    assert levels == {1: StockLevel(current=10, reserved=3), 2: StockLevel(current=5, reserved=1)}

    # 有一行未知 variant：整批不落账
    res = await ledger.deduct_batch(7, [StockLine(1, 3), StockLine(99, 1)], release_reserved=True)
    assert not res.success
    assert {ln.variant_id for ln in res.failed_lines} == {1, 99}
    assert (await ledger.read_available([1]))[1] == StockLevel(current=10, reserved=3)

    res = await ledger.deduct_batch(7, [StockLine(1, 3)], release_reserved=True)
    assert res.success
    (ln,) = res.lines
    assert (ln.balance_before, ln.balance_after, ln.reserved_before, ln.reserved_after) == (10, 7, 3, 0)

    res = await ledger.restore_batch(7, [StockLine(1, 3)])
    assert (await ledger.read_available([1]))[1] == StockLevel(current=10, reserved=0)


@pytest.mark.asyncio
async def test_order_store_round_trip(seeded):
    from app.services.order_workflow_types import OrderDraft, OrderLineSnapshot

    store = SqlOrderStore(seeded)
    created = await store.create_order(
        OrderDraft(
            order_number="ORD-TEST-1",
            status=S.INTAKE,
            fulfillment_type=FulfillmentType.THIRD_PARTY_COURIER,
            lines=(OrderLineSnapshot(variant_id=1, quantity=2, unit_price=Decimal("5.00"), line_total=Decimal("10.00")),),
            subtotal=Decimal("10.00"),
            discount_amount=Decimal("0"),
            shipping_charges=Decimal("2.50"),
            total_amount=Decimal("12.50"),
        )
    )
    assert created.id > 0
    assert created.status is S.INTAKE
    assert created.lines[0].quantity == 2
    assert created.total_amount == Decimal("12.50")

    await store.write_status(created.id, {"status": S.FOLLOW_UP, "followup_reason": "call back"})
    again = await store.read_order(created.id)
    assert again.status is S.FOLLOW_UP
    assert again.followup_reason == "call back"

    with pytest.raises(ValueError):
        await store.write_status(created.id, {"order_number": "X"})

    assert await store.read_order(424242) is None


@pytest.mark.asyncio
async def test_full_flow_on_sql(sql_service, seeded):
    admin_out = await sql_service.create_order(
        NewOrder(
            fulfillment_type=FulfillmentType.LOCAL_DELIVERY,
            status=S.CONVERTED,
            lines=[NewOrderLine(variant_id=1, quantity=4, unit_price=Decimal("20"), sku="TEE-M")],
        ),
        actor=_admin(),
    )
    order = admin_out.order
    assert order.stock_commitment is StockCommitment.RESERVED

    out = await sql_service.update_status(order.id, S.PACKED, actor=_admin())
    assert out.order.stock_commitment is StockCommitment.DEDUCTED

    out = await sql_service.cancel_order(order.id, "customer cancelled", actor=_admin())
    assert out.order.status is S.CANCELLED
    assert out.order.stock_commitment is StockCommitment.NONE

    async with seeded() as session:
        v = await session.get(ProductVariant, 1)
        assert (v.current_stock, v.reserved_stock) == (10, 0)

        moves = (await session.execute(select(StockMovement).order_by(StockMovement.id))).scalars().all()
        assert [(m.movement_type, m.quantity) for m in moves] == [
            (MovementType.RESERVE.value, 4),
            (MovementType.SALE.value, -4),
            (MovementType.RETURN.value, 4),
        ]

        events = (
            await session.execute(select(OrderAuditEvent).where(OrderAuditEvent.order_id == order.id))
        ).scalars().all()
        kinds = sorted(e.event for e in events)
        assert kinds.count("STATUS_CHANGED") == 2
        assert kinds.count("ORDER_CREATED") == 1
        assert kinds.count("INVENTORY_TRIGGER") == 3


@pytest.mark.asyncio
async def test_strict_shortfall_on_sql_leaves_rows_untouched(sql_service, seeded):
    created = await sql_service.create_order(
        NewOrder(
            fulfillment_type=FulfillmentType.LOCAL_DELIVERY,
            lines=[NewOrderLine(variant_id=2, quantity=7)],
        ),
        actor=_admin(),
    )
    await sql_service.update_status(created.order.id, S.CONVERTED, actor=_admin())
    # 自己预占了 7（库存只有 5，属于缺货单预占），打包时 STRICT 仍然要拦
    with pytest.raises(InsufficientStock):
        await sql_service.update_status(created.order.id, S.PACKED, actor=_admin())

    async with seeded() as session:
        v = await session.get(ProductVariant, 2)
        assert (v.current_stock, v.reserved_stock) == (5, 7)


@pytest.mark.asyncio
async def test_audit_writer_swallows_failures(caplog):
    """审计写失败只打日志，不影响主流程。"""
    from app.services.order_workflow_types import AuditEvent

    class BrokenFactory:
        def __call__(self):
            raise RuntimeError("db down")

    writer = AuditEventWriter(BrokenFactory())  # type: ignore[arg-type]
    with caplog.at_level("INFO", logger="ordflow.audit"):
        await writer.emit(AuditEvent(order_id=1, event="STATUS_CHANGED", new_status="packed"))
    assert "[audit-fallback]" in caplog.text


def _admin():
    from app.services.order_workflow_types import ActorContext

    return ActorContext.of("admin-1", "admin")


@pytest.mark.asyncio
async def test_create_order_raises_when_row_cannot_be_read_back(seeded):
    """写入后读不回来：抛 OrderNotFound，而不是返回 None。"""
    from app.services.order_workflow_types import OrderDraft
    from app.services.workflow_errors import OrderNotFound

    class VanishingStore(SqlOrderStore):
        async def read_order(self, order_id):
            return None

    store = VanishingStore(seeded)
    with pytest.raises(OrderNotFound):
        await store.create_order(
            OrderDraft(
                order_number="ORD-VANISH",
                status=S.INTAKE,
                fulfillment_type=FulfillmentType.LOCAL_DELIVERY,
                lines=(),
                subtotal=Decimal("0"),
                discount_amount=Decimal("0"),
                shipping_charges=Decimal("0"),
                total_amount=Decimal("0"),
            )
        )
