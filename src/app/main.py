# src/app/main.py
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from typing import Any, Optional
import logging
import platform
import time

import psutil

from src.app.middleware.audit import audit_logger, audit_requests, new_request_id
from src.app.routers import records as records_router
from src.airtable.client import build_airtable_client
from src.core.config import settings
from src.core.errors import (
    INTERNAL_ERROR_CODE, INTERNAL_ERROR_MESSAGE, ApiError, RateLimitExceededError,
    invalid_record_data, invalid_request_body
)
from src.utils.logger import setup_logging

# Setup logging
setup_logging()
logger = logging.getLogger(settings.APP_NAME)

APP_STARTED_AT = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One gateway per process, shared by every request.
    client = build_airtable_client()
    if settings.AIRTABLE_PRELOAD_TABLES:
        await client.load_table_names()
    app.state.airtable_client = client
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started for base {settings.AIRTABLE_BASE_ID}")
    try:
        yield
    finally:
        await audit_logger.flush()
        await client.http.aclose()
        logger.info(f"{settings.APP_NAME} shut down")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Generic CRUD middleware for Airtable bases, with batched bulk writes and best-effort rollback.",
    openapi_url=f"{settings.API_PREFIX}/openapi.json",
    lifespan=lifespan,
)

# CORS Middleware
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# Middleware to add process time header
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    process_time = time.perf_counter() - start_time
    response.headers["X-Process-Time"] = f"{process_time:.4f}"
    logger.info(
        f"Request: {request.method} {request.url.path} - Status: {response.status_code} - Process Time: {process_time:.4f}s"
    )
    return response

# Registered last so it wraps the timing middleware and sees every response.
app.middleware("http")(audit_requests)


def error_response(
    request: Request, status_code: int, code: str, message: str, details: Optional[Any] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or new_request_id()
    # Picked up by the audit middleware for failed requests.
    request.state.error_code = code
    request.state.error_message = message
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "details": details},
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "requestId": request_id,
        },
        headers=headers,
    )

# Exception handlers
@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(f"{exc.code} ({exc.http_status}) for request {request.method} {request.url.path}: {exc.message}")
    headers = None
    if isinstance(exc, RateLimitExceededError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}
    return error_response(request, exc.http_status, exc.code, exc.message, exc.details, headers)

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation error: {exc.errors()} for request: {request.method} {request.url.path}")
    problems = []
    record_level = False
    for problem in exc.errors():
        loc = tuple(problem.get("loc", ()))
        # ("body", <index>, ...) points into one record of a bulk body
        if len(loc) > 1 and loc[0] == "body" and isinstance(loc[1], int):
            record_level = True
        location = ".".join(str(part) for part in loc if part != "body")
        problems.append(f"{location}: {problem.get('msg')}" if location else problem.get("msg"))

    if record_level:
        error = invalid_record_data("One or more records in the request body are invalid", ", ".join(problems))
    else:
        error = invalid_request_body("Request body validation failed", ", ".join(problems))
    return error_response(request, error.http_status, error.code, error.message, error.details)

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc} for request: {request.method} {request.url.path}", exc_info=True)
    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        INTERNAL_ERROR_CODE,
        INTERNAL_ERROR_MESSAGE,
    )

# Include routers
app.include_router(records_router.router, prefix=settings.API_PREFIX, tags=["Airtable Records"])

@app.get("/health", tags=["Health"])
async def health_check():
    client = getattr(app.state, "airtable_client", None)
    return {
        "status": "healthy",
        "application": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "base_id": settings.AIRTABLE_BASE_ID,
        "known_tables": client.table_names if client else [],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

@app.get("/metrics", tags=["Metrics"], summary="Get system and application metrics")
async def get_detailed_metrics():
    """
    Returns basic system metrics (CPU, memory, disk) and application information.
    """
    try:
        disk_usage = psutil.disk_usage('/')
        disk_metrics = {"total": disk_usage.total, "used": disk_usage.used, "percent": disk_usage.percent}
    except OSError as e: # Permission denied or path not found
        logger.warning(f"Could not retrieve disk usage metrics: {e}")
        disk_metrics = None

    memory = psutil.virtual_memory()
    return {
        "application_name": settings.APP_NAME,
        "application_version": settings.APP_VERSION,
        "application_uptime_seconds": round(time.time() - APP_STARTED_AT, 3),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "cpu_logical_count": psutil.cpu_count(logical=True),
        "cpu_usage_percent": psutil.cpu_percent(interval=None),
        "cpu_load_average": psutil.getloadavg() if hasattr(psutil, "getloadavg") else None,
        "memory_virtual": {
            "total": memory.total,
            "available": memory.available,
            "percent": memory.percent,
        },
        "disk_usage_root": disk_metrics,
        "recent_audit_entries": len(audit_logger.recent),
        "operating_system": platform.platform(),
        "python_version": platform.python_version(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("src.app.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG_MODE)
