# app/models/__init__.py
"""
统一导出 ORM 模型。
"""

from importlib import import_module


def _export(module_name: str, class_name: str) -> None:
    module = import_module(module_name)
    globals()[class_name] = getattr(module, class_name)


MODEL_SPECS = [
    # -------- 库存 --------
    ("app.models.product_variant", "ProductVariant"),
    ("app.models.stock_movement", "StockMovement"),
    # -------- 订单 --------
    ("app.models.order", "Order"),
    ("app.models.order_line", "OrderLine"),
    # -------- 审计 --------
    ("app.models.audit_event", "OrderAuditEvent"),
]

for _mod, _cls in MODEL_SPECS:
    _export(_mod, _cls)

__all__ = [cls for _, cls in MODEL_SPECS]
