from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from postureguard.apps.api.response import error_response
from postureguard.core.errors import (
    AuthenticationError,
    ConfigurationError,
    PostureGuardError,
    RunConflict,
    TransientProviderError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors surfaced synchronously by triggers and credential configuration.
_DOMAIN_ERRORS: tuple[tuple[type[PostureGuardError], int, str], ...] = (
    (RunConflict, 409, "SCAN_ALREADY_RUNNING"),
    (ConfigurationError, 400, "PROVIDER_NOT_CONFIGURED"),
    (AuthenticationError, 400, "PROVIDER_AUTH_FAILED"),
    (TransientProviderError, 503, "PROVIDER_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


def domain_error_status(exc: PostureGuardError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def domain_exception_handler(request: Request, exc: PostureGuardError) -> JSONResponse:
    status_code, code = domain_error_status(exc)
    logger.info("api_domain_error path=%s code=%s kind=%s", request.url.path, code, exc.kind)
    payload = error_response(request=request, code=code, message=str(exc), details={"kind": exc.kind})
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("api_unhandled_error path=%s", request.url.path)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
