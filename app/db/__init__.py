# app/db/__init__.py
"""
数据库层：

- base.py     ORM Base + init_models()
- session.py  异步引擎 / 会话工厂 / FastAPI 依赖
"""
