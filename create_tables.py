# create_tables.py
# 本地 / 演示环境一键建表（生产走 alembic upgrade head）
import asyncio

from app.db.base import Base, init_models
from app.db.session import close_engines, get_engine


async def main() -> None:
    # 导入所有模型，确保它们的元数据被注册
    init_models()
    engine = get_engine()
    print("正在创建所有数据库表...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await close_engines()
    print("所有数据库表创建完成！")


if __name__ == "__main__":
    asyncio.run(main())
