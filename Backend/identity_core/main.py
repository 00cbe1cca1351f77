"""
Main FastAPI application entry point.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from identity_core.api.v1 import auth, directory, health, sso, twofa
from identity_core.core.config import settings
from identity_core.core.database import close_db, init_db
from identity_core.core.dependencies import close_redis_pool, get_redis_pool
from identity_core.core.encryption import get_secret_vault
from identity_core.core.exceptions import IdentityError
from identity_core.core.kv_store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from identity_core.core.tasks import AsyncioTaskScheduler
from identity_core.services.directory.client import DirectoryClient
from identity_core.services.directory.jobs import build_directory_scheduler


# Configure structured logging
logging.basicConfig(format="%(message)s", level=settings.log.level.upper())

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.log.format == "json" else structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


async def _create_state_store() -> KeyValueStore:
    """Redis when enabled and reachable, process memory otherwise."""
    if settings.redis.enabled:
        try:
            redis = await get_redis_pool()
            logger.info("Redis connected for SSO state")
            return RedisKeyValueStore(redis, prefix=settings.redis.state_prefix)
        except RuntimeError as e:
            logger.warning("Falling back to in-memory SSO state", error=str(e))
    return InMemoryKeyValueStore()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting application", version=settings.app.app_version, env=settings.app.app_env)

    if settings.database.create_tables:
        try:
            await init_db()
            logger.info("Database tables verified via init_db")
        except Exception as init_error:
            logger.error("Failed to initialize database", error=str(init_error))

    task_scheduler = AsyncioTaskScheduler()
    vault = get_secret_vault()

    app.state.task_scheduler = task_scheduler
    app.state.kv_store = await _create_state_store()
    app.state.http_client = httpx.AsyncClient(timeout=settings.sso.http_timeout)
    app.state.directory_client = DirectoryClient()
    app.state.directory_scheduler = build_directory_scheduler(task_scheduler, app.state.directory_client, vault)

    task_scheduler.call_every(
        settings.sso.state_gc_interval_seconds,
        app.state.kv_store.purge_expired,
        name="sso-state-gc",
    )
    if settings.directory.scheduler_enabled:
        await app.state.directory_scheduler.start()

    logger.info(
        "Configuration loaded",
        app_name=settings.app.app_name,
        redis_enabled=settings.redis.enabled,
        directory_scheduler=settings.directory.scheduler_enabled,
        cors_origins=settings.app.cors_origins_list,
    )

    yield

    # Shutdown
    logger.info("Shutting down application")
    await app.state.directory_scheduler.stop()
    await task_scheduler.shutdown()
    await app.state.http_client.aclose()
    await close_redis_pool()
    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.app.app_name,
    version=settings.app.app_version,
    description="Booking platform identity and access federation API",
    docs_url="/docs" if settings.docs_enabled else None,
    redoc_url="/redoc" if settings.docs_enabled else None,
    lifespan=lifespan,
)


# ============================================================================
# Middleware
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.app.cors_origins_list,
    allow_credentials=settings.app.cors_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def log_requests(request, call_next):
    """Log all requests and add request ID."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    start_time = time.time()

    if settings.log.requests:
        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            request_id=request_id,
        )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        if settings.log.requests:
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.time() - start_time) * 1000, 2),
                request_id=request_id,
            )

        return response

    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            duration_ms=round((time.time() - start_time) * 1000, 2),
            request_id=request_id,
        )
        raise


# ============================================================================
# Exception Handlers
# ============================================================================

def _error_response(request, status_code: int, code, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message, **extra},
            "meta": {
                "request_id": getattr(request.state, "request_id", None),
            },
        },
    )


@app.exception_handler(IdentityError)
async def identity_exception_handler(request, exc: IdentityError):
    """Render identity errors with their stable code."""
    if exc.status_code >= 500:
        logger.error("Identity service error", path=request.url.path, code=exc.code, error=exc.message)
    return _error_response(request, exc.status_code, exc.code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return _error_response(request, exc.status_code, exc.status_code, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc: RequestValidationError):
    """Handle validation errors."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return _error_response(request, 422, "VALIDATION_ERROR", "Request validation failed", details=errors)


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    """Handle general exceptions."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
        exc_info=exc,
    )
    message = "An internal error occurred" if not settings.app.app_debug else str(exc)
    return _error_response(request, 500, "INTERNAL_ERROR", message)


# ============================================================================
# Routes
# ============================================================================

app.include_router(health.router)
app.include_router(health.router, prefix="/api/v1")
app.include_router(auth.router, prefix="/api/v1")
app.include_router(twofa.router, prefix="/api/v1")
app.include_router(directory.router, prefix="/api/v1")
app.include_router(sso.router, prefix="/api/v1")
