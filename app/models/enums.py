from __future__ import annotations

from enum import StrEnum


class OrderStatus(StrEnum):
    """
    订单状态全集（各渠道共用同一套值，邻接关系见 workflow_rules）：

    - 接单阶段：INTAKE / FOLLOW_UP
    - 处理阶段：CONVERTED / HOLD / PACKED
    - 配送阶段：ASSIGNED / OUT_FOR_DELIVERY（自有骑手）
                HANDOVER_TO_COURIER / IN_TRANSIT（第三方快递）
                STORE_SALE（门店）
    - 结果阶段：DELIVERED / REJECTED / RETURN_INITIATED / RETURNED / CANCELLED
    """

    INTAKE = "intake"
    FOLLOW_UP = "follow_up"
    CONVERTED = "converted"
    HOLD = "hold"
    PACKED = "packed"
    ASSIGNED = "assigned"
    OUT_FOR_DELIVERY = "out_for_delivery"
    HANDOVER_TO_COURIER = "handover_to_courier"
    IN_TRANSIT = "in_transit"
    STORE_SALE = "store_sale"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    RETURN_INITIATED = "return_initiated"
    RETURNED = "returned"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({OrderStatus.RETURNED, OrderStatus.CANCELLED})

# 尚未占用库存的阶段：只有在这里才允许改渠道
PRE_FULFILLMENT_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.INTAKE, OrderStatus.FOLLOW_UP}
)


class FulfillmentType(StrEnum):
    LOCAL_DELIVERY = "local_delivery"
    THIRD_PARTY_COURIER = "third_party_courier"
    IN_STORE = "in_store"


class ActorRole(StrEnum):
    """
    操作人角色（封闭集合）。

    上游传进来的是字符串，统一走 parse()，未知值直接报错，
    不允许“拼错一个字母就绕过权限”的情况。
    """

    ADMIN = "admin"
    MANAGER = "manager"
    OPERATOR = "operator"
    RIDER = "rider"
    VIEWER = "viewer"

    @classmethod
    def parse(cls, raw: str) -> "ActorRole":
        v = (raw or "").strip().lower()
        try:
            return cls(v)
        except ValueError:
            raise ValueError(f"unknown actor role: {raw!r}") from None


class StockValidationMode(StrEnum):
    NONE = "NONE"
    SOFT = "SOFT"
    STRICT = "STRICT"


class StockCommitAction(StrEnum):
    """某个状态下，订单应当对库存做的承诺动作。"""

    NONE = "none"
    RESERVE = "reserve"
    DEDUCT = "deduct"


class StockCommitment(StrEnum):
    """订单当前对库存持有的承诺：none → reserved → deducted → none。"""

    NONE = "none"
    RESERVED = "reserved"
    DEDUCTED = "deducted"


class InventoryAction(StrEnum):
    RESERVE = "RESERVE"
    DEDUCT = "DEDUCT"
    RESTORE = "RESTORE"
    NONE = "NONE"


class MovementType(StrEnum):
    """
    stock_movements.movement_type：

    - SALE     出库（打包扣减 / 门店销售），quantity 为负
    - RETURN   回库（取消 / 拒收 / 退货），quantity 为正
    - RESERVE  预占变化（正数=预占，负数=释放），余额口径为 reserved_stock
    """

    SALE = "SALE"
    RETURN = "RETURN"
    RESERVE = "RESERVE"


class DeliveryVariant(StrEnum):
    HOME = "home"
    BRANCH_PICKUP = "branch_pickup"
