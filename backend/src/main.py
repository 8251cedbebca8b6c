"""
FastAPI application for the delivery marketplace order service.

Wires the order and admin routers under ``/api/v1``, request correlation,
rate limiting and CORS, the health probes, and the exception handlers that
turn order lifecycle outcomes and database outages into HTTP responses.
Every error body has the same shape::

    {"error": <code>, "message": ..., "details": ..., "request_id": ...}
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import DBAPIError

from src.api.v1 import admin_router, orders_router
from src.core.config import get_settings
from src.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from src.core.rate_limit import limiter
from src.database.connection import check_database_health, close_database_connections
from src.services.orders.exceptions import OrderLifecycleError

configure_logging()
logger = get_logger(__name__)
settings = get_settings()

ERROR_STATUS_CODES = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "unauthorized": status.HTTP_403_FORBIDDEN,
    "location_required": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "illegal_transition": status.HTTP_409_CONFLICT,
    "already_taken": status.HTTP_409_CONFLICT,
    "stale_state": status.HTTP_409_CONFLICT,
}

# lost races and replays, not refusals
ROUTINE_ERROR_CODES = frozenset({"already_taken", "stale_state"})


def error_response(
    status_code: int,
    error: str,
    message: str,
    details: Any = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    content: dict[str, Any] = {"error": error, "message": message}
    if details is not None:
        content["details"] = jsonable_encoder(details)
    content["request_id"] = get_request_id()
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "Order service starting",
        environment=settings.environment,
        version=settings.app_version,
        notification_backend=settings.notification_backend,
        rate_limit_enabled=settings.rate_limit_enabled,
    )

    yield

    logger.info("Order service shutting down")
    with log_performance(logger, "application_shutdown"):
        await close_database_connections()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Order lifecycle and driver assignment for a delivery marketplace",
    lifespan=lifespan,
    debug=settings.debug,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """
    Assign the request id, time the request and echo ``X-Request-ID``.

    Correlation ids are cleared once the response is produced.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    try:
        with log_performance(
            logger,
            "request",
            method=request.method,
            path=request.url.path,
        ) as timer:
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=timer.elapsed_ms,
        )
        return response
    finally:
        clear_context()


@app.exception_handler(OrderLifecycleError)
async def order_lifecycle_exception_handler(
    request: Request, exc: OrderLifecycleError
) -> JSONResponse:
    log_method = logger.info if exc.code in ROUTINE_ERROR_CODES else logger.warning
    log_method(
        "Order request refused",
        method=request.method,
        path=request.url.path,
        code=exc.code,
        reason=str(exc),
    )

    return error_response(
        ERROR_STATUS_CODES.get(exc.code, status.HTTP_400_BAD_REQUEST),
        exc.code,
        str(exc),
        details=exc.context,
    )


@app.exception_handler(DBAPIError)
async def database_exception_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    """
    The order store is unreachable or failing. Nothing was applied, so the
    client may retry after ``Retry-After`` seconds.
    """
    logger.error(
        "Database error",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )

    return error_response(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "database_unavailable",
        "Order store is temporarily unavailable, retry later",
        headers={"Retry-After": str(settings.db_unavailable_retry_after_seconds)},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=errors,
    )

    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "validation_error",
        "Request validation failed",
        details=errors,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unexpected failure; details stay in the log."""
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "An unexpected error occurred",
    )


@app.get("/health", tags=["Health"], summary="Process is up")
async def health_check() -> dict[str, str]:
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/ready", tags=["Health"], summary="Order store is reachable")
async def readiness_check():
    """
    Ready means the order store answers queries. A failing store returns 503
    so the instance is taken out of rotation.
    """
    if not await check_database_health(max_retries=1):
        logger.warning("Readiness check failed", database="unhealthy")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "service": settings.app_name,
                "dependencies_ready": False,
                "database": "unhealthy",
            },
        )

    return {
        "status": "ready",
        "service": settings.app_name,
        "version": settings.app_version,
        "dependencies_ready": True,
        "database": "healthy",
    }


@app.get("/live", tags=["Health"], summary="Liveness probe")
async def liveness_check() -> dict[str, str]:
    return {
        "status": "alive",
        "service": settings.app_name,
        "version": settings.app_version,
    }


app.include_router(orders_router, prefix=settings.api_v1_prefix)
app.include_router(admin_router, prefix=settings.api_v1_prefix)
