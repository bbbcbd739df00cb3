from __future__ import annotations

import importlib
import logging
from typing import Iterable, List, Set

from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("ordflow.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


_INITIALIZED: bool = False  # 防重复初始化

MODEL_MODULES = [
    "app.models.product_variant",
    "app.models.order",
    "app.models.order_line",
    "app.models.stock_movement",
    "app.models.audit_event",
]


def init_models(
    *,
    extra_modules: Iterable[str] | None = None,
    force: bool = False,
) -> None:
    """
    集中导入模型 + 固化关系映射：
      1) 显式导入 MODEL_MODULES（保证字符串关系目标类已注册）
      2) 追加 extra_modules
      3) 最后统一 configure_mappers()

    导入失败直接抛出，不做静默跳过：缺表比建错表更容易发现。
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        log.debug("init_models() called again; already initialized, skipping.")
        return

    loaded: List[str] = []
    seen: Set[str] = set()
    for mod in [*MODEL_MODULES, *(extra_modules or [])]:
        if mod in seen:
            continue
        seen.add(mod)
        importlib.import_module(mod)
        loaded.append(mod)

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized & mappers configured (loaded %d modules)", len(loaded))
