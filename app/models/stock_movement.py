from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class StockMovement(Base):
    """
    库存流水（只增不改）

    - quantity 为有符号变化量
    - SALE / RETURN 的 balance_* 口径为 current_stock
    - RESERVE 的 balance_* 口径为 reserved_stock
    """

    __tablename__ = "stock_movements"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    variant_id: Mapped[int] = mapped_column(sa.Integer, nullable=False, index=True)
    movement_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    order_id: Mapped[int | None] = mapped_column(sa.Integer, nullable=True, index=True)
    source: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (sa.Index("ix_stock_movements_variant_time", "variant_id", "created_at"),)

    def __repr__(self) -> str:
        return (
            f"<StockMovement {self.movement_type} variant={self.variant_id} "
            f"qty={self.quantity} {self.balance_before}->{self.balance_after} order={self.order_id}>"
        )
