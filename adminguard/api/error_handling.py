from __future__ import annotations

from typing import Mapping, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from adminguard.api.schemas import ErrorBody, ErrorEnvelope
from adminguard.logging import get_correlation_id, get_logger
from adminguard.service.errors import RateLimitedError, ServiceError

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "not_found",
    409: "conflict",
    413: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "service_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """Build the error envelope shared by gateway and framework failures."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = ErrorEnvelope(error=error_body, request_id=get_correlation_id() or str(uuid4()))
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=dict(headers or {}),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install error envelopes for failures raised outside the gateway."""

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
        headers = {}
        if isinstance(exc, RateLimitedError):
            headers["Retry-After"] = str(exc.retry_after)
        return error_response(exc.status_code, exc.message, code=exc.error_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [
            {"field": ".".join(str(part) for part in err.get("loc", ())[1:]) or "body", "kind": "type_mismatch"}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(fields),
        )
        return error_response(400, "invalid request", {"fields": fields}, code="validation_error")

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
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message, headers=exc.headers)

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
        return error_response(500, "internal server error", code="server_error")
