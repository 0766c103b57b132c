from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from accountlink.api.schemas import Envelope, ErrorBody
from accountlink.logging import get_correlation_id, get_logger
from accountlink.service.errors import ServiceError
from accountlink.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    405: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if status_code < 500 else "server_error"


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Create an error response envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(
            exc.status_code, exc.message, exc.detail or None, code=exc.error_code
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[".".join(str(p) for p in e["loc"]) for e in errors],
        )
        return _error_response(
            422, "request validation failed", jsonable_encoder(errors), code="validation_error"
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
