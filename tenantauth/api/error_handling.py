from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.logging import get_logger
from tenantauth.service.errors import ErrorCode, ServiceError
from tenantauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ErrorCode.VALIDATION.value,
    401: ErrorCode.UNAUTHORIZED.value,
    403: ErrorCode.FORBIDDEN.value,
    404: ErrorCode.NOT_FOUND.value,
    405: ErrorCode.NOT_FOUND.value,
    409: ErrorCode.CONFLICT.value,
    422: ErrorCode.VALIDATION.value,
    429: ErrorCode.RATE_LIMITED.value,
    500: ErrorCode.SERVER.value,
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, ErrorCode.SERVER.value)


def _error_headers(status_code: int, details: Any) -> dict[str, str]:
    headers: dict[str, str] = {}
    if status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    if status_code == 429 and isinstance(details, dict):
        retry_after = details.get("retry_after_seconds")
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
    return headers


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Render an error envelope; 401 and 429 also get their standard headers."""
    body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    return JSONResponse(
        status_code=status_code,
        content=Envelope(status="error", error=body).model_dump(),
        headers=_error_headers(status_code, details) or None,
    )


def _log_client_or_server(
    event: str, request: Request, status_code: int, **fields: Any
) -> None:
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        event,
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        **fields,
    )


def _field_errors(exc: RequestValidationError) -> list[dict]:
    details = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        details.append(
            {
                "field": ".".join(loc) or None,
                "message": error.get("msg", "invalid value"),
                "type": error.get("type"),
            }
        )
    return details


def _unpack_http_detail(exc: HTTPException) -> tuple[str, Optional[str], Any]:
    """Split an HTTPException detail into message, code and details.

    Route helpers raise with a pre-built ``{"error": {...}}`` payload; the
    router's own 404/405 carry a plain string.
    """
    detail = exc.detail
    if isinstance(detail, dict) and isinstance(detail.get("error"), dict):
        error = detail["error"]
        return error.get("message", "http error"), error.get("code"), error.get("details")
    if isinstance(detail, str):
        return detail, None, None
    return "http error", None, detail if isinstance(detail, (dict, list)) else None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure, expected or not, as an error envelope."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        _log_client_or_server(
            "constraint_violation", request, 409, message=exc.message, field=exc.field
        )
        return _error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        _log_client_or_server(
            "service_error",
            request,
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _field_errors(exc)
        _log_client_or_server(
            "request_validation_failed",
            request,
            400,
            fields=[item["field"] for item in details],
        )
        return _error_response(400, "Validation failed", details, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message, code, details = _unpack_http_detail(exc)
        _log_client_or_server(
            "http_error", request, exc.status_code, error_code=code, message=message
        )
        return _error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
