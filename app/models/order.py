from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List

from sqlalchemy import Boolean, DateTime, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.models.enums import OrderStatus, StockCommitment

if TYPE_CHECKING:
    from app.models.order_line import OrderLine


class Order(Base):
    """
    订单主档（工作流引擎视角）

    - status / fulfillment_type / stock_commitment 以字符串落库，取值见 app.models.enums
    - 金额在创建时计算一次，之后只允许修正路由信息，不改金额
    - 从不物理删除：终态为 cancelled / returned
    """

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status", "status"),
        Index("ix_orders_channel_status", "fulfillment_type", "status"),
        Index("ix_orders_rider", "rider_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=OrderStatus.INTAKE.value)
    fulfillment_type: Mapped[str] = mapped_column(String(32), nullable=False)
    stock_commitment: Mapped[str] = mapped_column(
        String(16), nullable=False, default=StockCommitment.NONE.value
    )

    # 自有骑手（local_delivery）
    rider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # 第三方快递（third_party_courier）
    courier_partner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tracking_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    destination_branch: Mapped[str | None] = mapped_column(String(128), nullable=True)
    delivery_variant: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # 金额
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    shipping_charges: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    is_backorder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    return_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    followup_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    handed_over_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    lines: Mapped[List["OrderLine"]] = relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="OrderLine.id",
    )

    def __repr__(self) -> str:
        return (
            f"<Order id={self.id} no={self.order_number!r} "
            f"channel={self.fulfillment_type} status={self.status}>"
        )
