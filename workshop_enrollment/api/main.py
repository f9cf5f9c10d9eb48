"""
Main FastAPI application.

Workshop enrollment API with:
- CORS configuration
- Domain error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from workshop_enrollment import __version__
from workshop_enrollment.config import get_settings
from workshop_enrollment.database import close_db, init_db
from workshop_enrollment.domain import DomainError, ErrorCode
from workshop_enrollment.monitoring.logging import (
    bind_request_context,
    clear_request_context,
    setup_logging,
)

from .dependencies import get_application
from .routes import enrollment_router, monitoring_router, waitlist_router, webhook_router
from .schemas import ErrorResponse

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()

ERROR_STATUS = {
    ErrorCode.WORKSHOP_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.ENROLLMENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.WAITLIST_ENTRY_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_PRICING_OPTION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.DUPLICATE_ENROLLMENT: status.HTTP_409_CONFLICT,
    ErrorCode.CHECKOUT_UNAVAILABLE: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.LOCK_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates tables on startup when the SQL store is used, and releases
    Redis and database connections on shutdown.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
        store_backend=settings.store_backend,
    )

    if settings.store_backend == "sql":
        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

    yield

    logger.info("application_shutdown")
    if get_application.cache_info().currsize:
        await get_application().close()
    await close_db()
    logger.info("database_connections_closed")


app = FastAPI(
    title="Workshop Enrollment",
    description=(
        "Seat admission, waitlist and payment reconciliation for capacity-limited "
        "workshops, with Stripe checkout and refunds."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id to the log context and echo it back to the caller."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    bind_request_context(request_id, method=request.method, path=request.url.path)
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        logger.exception("request_failed", duration_seconds=time.perf_counter() - started)
        raise
    else:
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=round(time.perf_counter() - started, 4),
        )
        return response
    finally:
        clear_request_context()


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Render domain errors with their stable code and a user-safe message."""
    status_code = ERROR_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST)
    log = logger.error if status_code >= 500 else logger.warning
    log("domain_error", code=exc.code.value, path=request.url.path)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(code=exc.code.value, message=exc.message).model_dump(),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            code="INTERNAL_ERROR", message="An unexpected error occurred"
        ).model_dump(),
    )


app.include_router(enrollment_router)
app.include_router(waitlist_router)
app.include_router(webhook_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Service banner with the main entry points."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "stripe_test_mode": settings.is_test_mode,
        "endpoints": {
            "enroll": "/enroll",
            "payment_events": "/payment-events",
            "refund": "/refund",
            "claim": "/waitlist/claim",
            "health": "/health",
            "metrics": "/metrics",
        },
    }
