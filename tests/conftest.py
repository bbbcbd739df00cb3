# tests/conftest.py
from __future__ import annotations

import os
from decimal import Decimal
from typing import AsyncGenerator, Callable, Sequence, Tuple

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# 测试不连真实 PostgreSQL：在 import app.main 之前把 DSN 指到 sqlite
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from app.adapters.memory import InMemoryAuditSink, InMemoryOrderStore, InMemoryStockLedger  # noqa: E402
from app.api.deps import get_workflow_service  # noqa: E402
from app.db.base import Base, init_models  # noqa: E402
from app.main import app  # noqa: E402
from app.models.enums import FulfillmentType, OrderStatus, StockCommitment  # noqa: E402
from app.services.order_workflow_service import OrderWorkflowService  # noqa: E402
from app.services.order_workflow_types import ActorContext, OrderLineSnapshot, OrderProjection  # noqa: E402

# ==========================
# 操作人
# ==========================

ADMIN = ActorContext.of("admin-1", "admin")
MANAGER = ActorContext.of("manager-1", "manager")
OPERATOR = ActorContext.of("op-1", "operator")
RIDER_1 = ActorContext.of("R1", "rider")
RIDER_2 = ActorContext.of("R2", "rider")
VIEWER = ActorContext.of("viewer-1", "viewer")


@pytest.fixture
def actors():
    return {
        "admin": ADMIN,
        "manager": MANAGER,
        "operator": OPERATOR,
        "rider1": RIDER_1,
        "rider2": RIDER_2,
        "viewer": VIEWER,
    }


# ==========================
# 内存端口 + 服务
# ==========================


@pytest.fixture
def ledger() -> InMemoryStockLedger:
    # variant 101 / 102 / 103 的初始库存 (current, reserved)
    return InMemoryStockLedger({101: (10, 0), 102: (5, 0), 103: (1, 0)})


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def audit() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def service(store, ledger, audit) -> OrderWorkflowService:
    return OrderWorkflowService(orders=store, ledger=ledger, audit=audit)


@pytest.fixture
def make_order(store) -> Callable[..., OrderProjection]:
    """
    直接往内存 store 里放一张订单（跳过下单流程），便于从任意状态起测。

    lines: [(variant_id, qty), ...]
    """
    seq = iter(range(1000, 100000))

    def _make(
        status: OrderStatus = OrderStatus.INTAKE,
        fulfillment_type: FulfillmentType = FulfillmentType.LOCAL_DELIVERY,
        lines: Sequence[Tuple[int, int]] = ((101, 2),),
        stock_commitment: StockCommitment = StockCommitment.NONE,
        **fields,
    ) -> OrderProjection:
        oid = fields.pop("id", None) or next(seq)
        order = OrderProjection(
            id=oid,
            status=status,
            fulfillment_type=fulfillment_type,
            order_number=f"T-{oid}",
            stock_commitment=stock_commitment,
            lines=tuple(
                OrderLineSnapshot(
                    variant_id=v,
                    quantity=q,
                    unit_price=Decimal("10.00"),
                    line_total=Decimal("10.00") * q,
                    sku=f"SKU-{v}",
                )
                for v, q in lines
            ),
            **fields,
        )
        return store.add(order)

    return _make


# =========================================
# sqlite（aiosqlite）引擎：每用例一个临时库文件
# =========================================


@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    init_models()
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ordflow.db'}",
        poolclass=NullPool,
        future=True,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


# =========================================
# FastAPI / httpx AsyncClient（服务换成内存实现）
# =========================================


@pytest_asyncio.fixture(scope="function")
async def client(service) -> AsyncGenerator[httpx.AsyncClient, None]:
    app.dependency_overrides[get_workflow_service] = lambda: service
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
        ) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_workflow_service, None)
