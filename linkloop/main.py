"""LinkLoop FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from linkloop import __version__
from linkloop.config import settings, validate_secret_key
from linkloop.core.errors import EngineError
from linkloop.database import close_database
from linkloop.logging_config import get_logger, setup_logging
from linkloop.middleware import CorrelationIdMiddleware
from linkloop.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from linkloop.routers import alerts, cgm, circle, glucose, health
from linkloop.routers import settings as settings_router
from linkloop.services.notification_dispatcher import dispatcher
from linkloop.services.scheduler import start_scheduler, stop_scheduler

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    validate_secret_key()
    # Migrations run before the server starts (linkloop-migrate)
    logger.info("LinkLoop API started")
    start_scheduler()

    yield

    logger.info("Shutting down LinkLoop API...")
    stop_scheduler()
    # Let in-flight notifications finish before the database goes away
    await dispatcher.drain()
    await close_database()
    logger.info("LinkLoop API shutdown complete")


app = FastAPI(
    title="LinkLoop API",
    description="Glucose alerts and care-circle acknowledgments",
    version=__version__,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map engine errors to their HTTP status with a stable error code."""
    if exc.status_code >= 500:
        logger.warning(
            "Request failed with engine error",
            path=request.url.path,
            error_code=exc.code,
            error=exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Middleware (first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(glucose.router)
app.include_router(alerts.router)
app.include_router(cgm.router)
app.include_router(settings_router.router)
app.include_router(circle.router)


@app.get("/")
async def root() -> dict[str, Any]:
    return {
        "name": "LinkLoop API",
        "version": __version__,
        "docs": "/docs",
    }
