import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from farmtrack.db import engine
from farmtrack.errors import ApiError, NightCheckError, error_response
from farmtrack.logging_utils import setup_json_logging
from farmtrack.routers import night_check
from farmtrack.services.cache import get_dashboard_cache
from farmtrack.services.email_dispatch import get_email_dispatcher
from farmtrack.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from farmtrack.services.scheduler import NightCheckScheduler
from farmtrack.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("farmtrack.request")
scheduler_logger = logging.getLogger("farmtrack.scheduler")

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor_id = request.headers.get("X-Actor-Id") or "admin"

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor_id": request.state.actor_id,
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(NightCheckError)
async def handle_night_check_error(request: Request, exc: NightCheckError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "night_check_request_failed",
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "error_code": exc.code,
                "error": str(exc),
            },
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=str(exc),
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(night_check.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        scheduler_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    scheduler_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_night_check_scheduler() -> None:
    if not settings.night_check_scheduler_enabled:
        scheduler_logger.info("night_check_scheduler_disabled")
        return
    if getattr(app.state, "night_check_scheduler", None) is not None:
        return

    scheduler = NightCheckScheduler()
    app.state.night_check_scheduler = scheduler
    await scheduler.start()

    email_status = await asyncio.to_thread(lambda: get_email_dispatcher().channel.config_status())
    missing_fields = email_status.get("missing_fields", []) if isinstance(email_status, dict) else []
    if isinstance(missing_fields, list) and missing_fields:
        scheduler_logger.warning(
            "notification_email_channel_not_configured",
            extra={"missing_fields": missing_fields},
        )
    scheduler_logger.info(
        "night_check_scheduler_started",
        extra={
            "default_time": settings.night_check_default_time,
            "pipeline_timeout_seconds": settings.night_check_pipeline_timeout_seconds,
            "fire_workers": settings.night_check_fire_workers,
            "reconcile_seconds": settings.night_check_reconcile_seconds,
        },
    )


@app.on_event("shutdown")
async def stop_night_check_scheduler() -> None:
    scheduler: NightCheckScheduler | None = getattr(app.state, "night_check_scheduler", None)
    if scheduler is not None:
        await scheduler.shutdown()
        scheduler_logger.info("night_check_scheduler_stopped")
    app.state.night_check_scheduler = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    scheduler: NightCheckScheduler | None = getattr(app.state, "night_check_scheduler", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "scheduler": scheduler.health() if scheduler is not None else {"enabled": False},
        "cache": get_dashboard_cache().health(),
        "email": get_email_dispatcher().channel.config_status(),
    }
