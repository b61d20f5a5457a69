"""FastAPI app factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import ManagerConfig
from .tasks.errors import ErrorAggregator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """App lifespan: init DB, build the orchestrator, start the watcher."""
    config: ManagerConfig = app.state.config

    from ..watcher.orchestrator import Orchestrator
    from .db.database import close_db, get_db, init_db

    await init_db(config.db_path)
    db = await get_db()

    orchestrator = Orchestrator(db, config)
    app.state.orchestrator = orchestrator
    await orchestrator.start()
    logger.info("[%s] task manager listening on %s:%s", config.worker_id, config.host, config.port)

    yield

    await orchestrator.stop()
    app.state.orchestrator = None
    await close_db()


def create_app(config: ManagerConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or ManagerConfig.load()

    app = FastAPI(
        title="Twitter Task Manager",
        description="Lifecycle control plane for Twitter client sessions",
        version="0.2.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.orchestrator = None
    app.state.errors = ErrorAggregator()

    # Register routers
    from .health.router import router as health_router
    from .settings.router import router as settings_router
    from .tasks.router import router as tasks_router

    app.include_router(health_router)
    app.include_router(tasks_router)
    app.include_router(settings_router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.debug("%s %s %d", request.method, request.url.path, response.status_code)
        return response

    # Error handlers
    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    return app
