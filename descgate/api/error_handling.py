from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from descgate.api.gatekeeper import client_ip, set_cookies
from descgate.logging import get_correlation_id, get_logger
from descgate.service.error_responder import ErrorReport
from descgate.service.errors import (
    AuthRequiredError,
    InvalidInputError,
    MethodNotAllowedError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    ServiceError,
)
from descgate.service.runtime import get_runtime
from descgate.storage.errors import StoreError

logger = get_logger(__name__)

# Framework-raised HTTP errors mapped onto the service taxonomy
_STATUS_TO_ERROR = {
    400: InvalidInputError,
    401: AuthRequiredError,
    403: PermissionDeniedError,
    404: NotFoundError,
    405: MethodNotAllowedError,
    429: RateLimitedError,
}


def request_context(request: Request) -> Dict[str, Any]:
    return {
        "endpoint": request.url.path,
        "method": request.method,
        "client_ip": client_ip(request),
        "correlation_id": get_correlation_id(),
    }


def error_response(report: ErrorReport) -> JSONResponse:
    """Render an error report; the only way an error body reaches the wire."""
    return JSONResponse(status_code=report.status_code, content=report.body, headers=report.headers)


async def respond_with_error(request: Request, exc: BaseException) -> JSONResponse:
    report = await get_runtime().responder.handle(exc, request_context(request))
    response = error_response(report)
    set_cookies(response, getattr(request.state, "rotated_cookies", ()))
    return response


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers so every failure is classified and sanitised by the error responder."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        return await respond_with_error(request, exc)

    @app.exception_handler(StoreError)
    async def handle_store_error(request: Request, exc: StoreError):
        return await respond_with_error(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        fault = InvalidInputError(
            "request validation failed",
            detail={
                "error_count": len(errors),
                "locations": [".".join(str(part) for part in err.get("loc", ())) for err in errors[:5]],
            },
        )
        return await respond_with_error(request, fault)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        error_cls = _STATUS_TO_ERROR.get(exc.status_code)
        if error_cls is not None:
            fault = error_cls(str(exc.detail))
        else:
            fault = ServiceError(str(exc.detail), status_code=exc.status_code)
        return await respond_with_error(request, fault)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return await respond_with_error(request, exc)
