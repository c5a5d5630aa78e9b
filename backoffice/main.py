# backoffice/main.py
"""
FastAPI application factory.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backoffice.core.config import settings
from backoffice.core.db import dispose_engine, health_check_db, init_db
from backoffice.core.exceptions import register_exception_handlers
from backoffice.core.logging import LoggingContextMiddleware, get_logger, setup_logging
from backoffice.routers import expeditions, invoices, orders, stock
from backoffice.worker import scheduler as scheduler_worker

logger = get_logger(__name__)


# ======================================================================================
# LIFESPAN (startup -> yield -> shutdown)
# ======================================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("application_startup", environment=settings.ENVIRONMENT, version=settings.VERSION)
    logger.debug("settings_loaded", settings=settings.dump_settings_safe())
    if settings.sqlalchemy_driver == "sqlite" and not settings.is_testing:
        init_db()

    if settings.ENABLE_SCHEDULER:
        scheduler_worker.start()
    try:
        yield
    finally:
        if settings.ENABLE_SCHEDULER:
            scheduler_worker.stop()
        dispose_engine()
        logger.info("application_shutdown")


# ======================================================================================
# APP FACTORY
# ======================================================================================
def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(LoggingContextMiddleware)
    register_exception_handlers(app)

    app.include_router(orders.router)
    app.include_router(stock.router)
    app.include_router(invoices.router)
    app.include_router(expeditions.router)

    @app.get("/health", tags=["health"])
    def health() -> dict[str, Any]:
        db = health_check_db()
        return {
            "status": "ok" if db.get("ok") else "degraded",
            "database": db,
            "scheduler": scheduler_worker.get_status(),
            "build": settings.build_info,
        }

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("backoffice.main:app", **settings.uvicorn_kwargs)


if __name__ == "__main__":
    run()
