# app/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routers.order_workflow import router as order_workflow_router
from app.core.config import get_settings
from app.core.logging import setup_logging
from app.db.base import init_models
from app.db.session import close_engines
from app.http_problem_handlers import register_exception_handlers
from app.metrics import router as metrics_router

logger = logging.getLogger("ordflow")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_models()
    logger.info("ordflow started (env=%s)", get_settings().ENV)
    yield
    await close_engines()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json_log=settings.JSON_LOG)

    app = FastAPI(
        title="ordflow",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    app.include_router(order_workflow_router)
    app.include_router(metrics_router)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    return app


app = create_app()
