from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from linkauth.api.schemas import Envelope, ErrorBody
from linkauth.logging import get_correlation_id, get_logger, sanitize_error_message
from linkauth.service.errors import ServiceError
from linkauth.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = "An internal server error occurred"

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "VALIDATION_ERROR",
    409: "CONFLICT",
    410: "EXPIRED",
    422: "VALIDATION_ERROR",
    423: "ACCOUNT_LOCKED",
    429: "RATE_LIMIT_EXCEEDED",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def envelope(status: str, *, data: Any = None, error: Optional[ErrorBody] = None) -> Envelope:
    """Build an envelope whose ``request_id`` matches the request's correlation id."""
    cid = get_correlation_id()
    if cid:
        return Envelope(status=status, data=data, error=error, request_id=cid)
    return Envelope(status=status, data=data, error=error)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    return JSONResponse(
        status_code=status_code, content=envelope("error", error=error_body).model_dump()
    )


def _report_error(exc: Exception, request: Request) -> None:
    # Imported late: the runtime may be the thing that failed to build.
    from linkauth.service.runtime import runtime

    if runtime is not None:
        runtime.analytics.track_error(
            exc, context={"path": request.url.path, "method": request.method}
        )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the error envelope."""

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
            detail=exc.detail,
        )
        if exc.status_code >= 500:
            _report_error(exc, request)
            return _error_response(exc.status_code, INTERNAL_ERROR_MESSAGE, code="INTERNAL_ERROR")
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.detail.get("field") == "phone_number":
            return _error_response(
                409, "an account already exists for this phone number", code="USER_ALREADY_EXISTS"
            )
        return _error_response(409, "the resource already exists", code="CONFLICT")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "store_unavailable",
            path=request.url.path,
            method=request.method,
            error=sanitize_error_message(str(exc)),
        )
        _report_error(exc, request)
        return _error_response(500, INTERNAL_ERROR_MESSAGE, code="INTERNAL_ERROR")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=len(errors),
        )
        return _error_response(400, "request validation failed", errors, code="VALIDATION_ERROR")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
            return _error_response(exc.status_code, INTERNAL_ERROR_MESSAGE, code="INTERNAL_ERROR")
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        _report_error(exc, request)
        return _error_response(500, INTERNAL_ERROR_MESSAGE, code="INTERNAL_ERROR")
