# app/api/deps.py
from __future__ import annotations

from fastapi import Header

from app.adapters.order_store_sql import SqlOrderStore
from app.adapters.stock_ledger_sql import SqlStockLedger
from app.api.problem import raise_problem
from app.core.config import get_settings
from app.db.session import get_session_factory
from app.services.audit_writer import AuditEventWriter
from app.services.order_workflow_service import OrderWorkflowService
from app.services.order_workflow_types import ActorContext


# ---------------------------
# 当前操作人
# ---------------------------


async def get_actor(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> ActorContext:
    """
    鉴权在网关完成，这里只读网关注入的两个头：

    - X-User-Id / X-User-Role 缺失 → 401
    - 角色不在封闭集合内 → 403
    """
    user_id = (x_user_id or "").strip()
    if not user_id or not (x_user_role or "").strip():
        raise_problem(
            status_code=401,
            error_code="ACTOR_REQUIRED",
            message="X-User-Id and X-User-Role headers are required",
        )
    try:
        return ActorContext.of(user_id, x_user_role)
    except ValueError as e:
        raise_problem(status_code=403, error_code="UNKNOWN_ROLE", message=str(e))


# ---------------------------
# 工作流服务
# ---------------------------


async def get_workflow_service() -> OrderWorkflowService:
    """
    服务本身不持有请求状态；各端口每次调用自开 session。
    测试里通过 app.dependency_overrides 换成内存实现。
    """
    factory = get_session_factory()
    return OrderWorkflowService(
        orders=SqlOrderStore(factory),
        ledger=SqlStockLedger(factory),
        audit=AuditEventWriter(factory),
        stock_check_on_pack=get_settings().STOCK_CHECK_ON_PACK,
    )


__all__ = (
    "get_actor",
    "get_workflow_service",
)
