# app/services/audit_writer.py
from __future__ import annotations

import json
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.audit_event import OrderAuditEvent
from app.services.order_workflow_types import AuditEvent

logger = logging.getLogger("ordflow.audit")


def _payload(event: AuditEvent) -> str:
    return json.dumps(
        {
            "event": event.event,
            "old_status": event.old_status,
            "new_status": event.new_status,
            "actor": f"{event.actor_role}/{event.actor_id}",
            "trace_id": event.trace_id,
            "meta": event.meta,
        },
        ensure_ascii=False,
        default=str,
    )


class AuditEventWriter:
    """
    订单审计写入器（AuditSink 的数据库实现）：

    - 唯一职责：往 order_audit_events 表写一行；
    - 每条事件独立 session / 独立提交，不和状态写入共享事务；
    - 写入失败不影响主流程，打 [audit-fallback] 日志兜底。
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def emit(self, event: AuditEvent) -> None:
        try:
            async with self.session_factory() as session:
                session.add(
                    OrderAuditEvent(
                        order_id=event.order_id,
                        event=event.event,
                        old_status=event.old_status,
                        new_status=event.new_status,
                        actor_id=event.actor_id,
                        actor_role=event.actor_role,
                        description=event.description,
                        meta=dict(event.meta),
                        trace_id=event.trace_id,
                    )
                )
                await session.commit()
        except Exception as e:
            logger.debug("order_audit_events insert failed: %s", e)
            logger.info("[audit-fallback] order=%s | %s", event.order_id, _payload(event))


class LoggingAuditSink:
    """只写日志的审计出口（没有数据库时使用）。"""

    async def emit(self, event: AuditEvent) -> None:
        logger.info("[audit] order=%s | %s", event.order_id, _payload(event))
