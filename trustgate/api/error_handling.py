from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from trustgate.api.schemas import Envelope, ErrorBody
from trustgate.logging import get_logger
from trustgate.service.errors import InvalidTokenError, RateLimitedError, ServiceError
from trustgate.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
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
    headers: dict | None = None,
) -> JSONResponse:
    """Render an error in the standard envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=jsonable_encoder(envelope), headers=headers
    )


def _unpack_http_detail(detail) -> tuple:
    """Accept either a plain detail string or a pre-built `{"error": {...}}` body."""
    body = detail.get("error") if isinstance(detail, dict) else None
    if isinstance(body, dict):
        return body.get("message", "http error"), body.get("code"), body.get("details")
    return (str(detail) if detail else "http error"), None, None


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-rendering handlers for domain, storage and framework errors.

    Method and path reach the logs through the request context bound by middleware;
    unhandled exceptions surface outside it and log the path themselves.
    """

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, detail=exc.detail)
        return error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("credential_store_unavailable", error=str(exc))
        return error_response(
            503, "credential store unavailable", code="service_unavailable"
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fields = {}
        if isinstance(exc, InvalidTokenError):
            # The client sees one message; the log keeps the cause
            log_fields["reason"] = exc.reason
        log_fn(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            **log_fields,
        )
        headers = None
        if isinstance(exc, RateLimitedError) and exc.detail and "retry_after" in exc.detail:
            headers = {"Retry-After": str(exc.detail["retry_after"])}
        return error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning("request_validation_failed", error_count=len(errors))
        return error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message, code, details = _unpack_http_detail(exc.detail)
        if exc.status_code >= 500:
            logger.error("http_error", status_code=exc.status_code, message=message)
        return error_response(exc.status_code, message, details, code=code)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            error_type=type(exc).__name__,
        )
        return error_response(500, "internal server error", code="server_error")
