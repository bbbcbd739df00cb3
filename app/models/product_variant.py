from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class ProductVariant(Base):
    """
    SKU 级库存余额（目录服务的表，这里只引用库存两列）

    - current_stock  实物在库
    - reserved_stock 已被未扣减订单占用
    - 可用 = current_stock - reserved_stock
    """

    __tablename__ = "product_variants"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)

    current_stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    reserved_stock: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def available(self) -> int:
        return int(self.current_stock or 0) - int(self.reserved_stock or 0)

    def __repr__(self) -> str:
        return (
            f"<ProductVariant id={self.id} sku={self.sku!r} "
            f"current={self.current_stock} reserved={self.reserved_stock}>"
        )
