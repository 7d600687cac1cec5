from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class NightCheckError(Exception):
    """Base class for failures of the nightly return check."""

    code = "NIGHT_CHECK_ERROR"
    status_code = 500


class TenantNotFound(NightCheckError):
    code = "TENANT_NOT_FOUND"
    status_code = 404

    def __init__(self, farm_id: int):
        super().__init__(f"Farm {farm_id} not found.")
        self.farm_id = farm_id


class StoreUnavailable(NightCheckError):
    code = "STORE_UNAVAILABLE"
    status_code = 503

    def __init__(self, operation: str, cause: BaseException | None = None):
        detail = f"{cause.__class__.__name__}" if cause is not None else "unknown"
        super().__init__(f"Store unavailable during {operation} ({detail}).")
        self.operation = operation
        self.cause = cause


class InvalidScheduleTime(ValueError):
    code = "INVALID_SCHEDULE_TIME"

    def __init__(self, value: str | None):
        super().__init__("Invalid time format. Use HH:MM (24-hour format).")
        self.value = value


# Kinds reported through step results rather than raised.
CACHE_INVALIDATION_FAILED = "CacheInvalidationFailed"
EMAIL_DELIVERY_FAILED = "EmailDeliveryFailed"


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
