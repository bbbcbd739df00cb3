from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class OrderAuditEvent(Base):
    """
    订单审计事件表 order_audit_events

    - event:  ORDER_CREATED / STATUS_CHANGED / INVENTORY_TRIGGER / ROUTING_UPDATED
    - old_status / new_status: 仅状态变更类事件有值
    - meta:   附加字段（库存动作结果、警告、payload 摘要 ...）
    - trace_id: 同一次操作内的多条事件共用
    """

    __tablename__ = "order_audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event: Mapped[str] = mapped_column(String(32), nullable=False)

    old_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(16), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    meta: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_order_audit_events_order_time", "order_id", "created_at"),
        Index("ix_order_audit_events_trace_id", "trace_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderAuditEvent id={self.id} order={self.order_id} event={self.event} "
            f"{self.old_status}->{self.new_status} trace_id={self.trace_id}>"
        )
