from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from strata.modules.inventory.api.v1.sync import router as inventory_router
from strata.modules.inventory.domain.orchestrator import Orchestrator
from strata.modules.inventory.domain.scheduler import InventoryScheduler
from strata.shared.core.config import get_settings, reload_settings_from_environment
from strata.shared.core.exceptions import StrataException
from strata.shared.core.logging import setup_logging
from strata.shared.db.session import get_session_maker, health_check as db_health_check, init_db

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    await init_db()

    orchestrator = Orchestrator(session_maker=get_session_maker())
    orchestrator.load_adapter_factories(settings.ADAPTER_FACTORIES)
    app.state.orchestrator = orchestrator

    scheduler = InventoryScheduler(orchestrator)
    if settings.SCHEDULER_ENABLED and not settings.TESTING:
        scheduler.start()
        logger.info("scheduler_started")
    else:
        logger.info(
            "scheduler_skipped",
            reason="testing" if settings.TESTING else "disabled",
        )
    app.state.scheduler = scheduler

    yield

    logger.info("app_shutting_down")
    scheduler.stop()


app = FastAPI(title=settings.APP_NAME, version=settings.VERSION, lifespan=lifespan)


@app.exception_handler(StrataException)
async def strata_exception_handler(request: Request, exc: StrataException) -> JSONResponse:
    """Handle custom application exceptions."""
    if exc.status_code >= 500:
        logger.error(
            "api_request_failed",
            path=request.url.path,
            code=exc.code,
            error=exc.message,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code, "details": exc.details},
    )


@app.get("/health", tags=["Lifecycle"])
async def health() -> Any:
    db = await db_health_check()
    scheduler = getattr(app.state, "scheduler", None)
    status = "healthy" if db.get("status") == "up" else "degraded"
    return {
        "status": status,
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "database": db,
        "scheduler": scheduler.get_status() if scheduler else None,
    }


app.include_router(inventory_router, prefix="/api/v1/inventory")

# Initialize Prometheus Metrics
Instrumentator().instrument(app).expose(app)
