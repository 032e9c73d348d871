from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from postureguard.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from postureguard.apps.api.response import API_VERSION
from postureguard.apps.api.routes.directory import router as directory_router
from postureguard.apps.api.routes.health import router as health_router
from postureguard.core.errors import PostureGuardError
from postureguard.core.logging import configure_logging
from postureguard.services.telemetry import increment_counter


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="PostureGuard API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"api_requests_total.{response.status_code}")
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers.setdefault("Server-Timing", f"app;dur={latency_ms:.1f}")
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(PostureGuardError)
    async def _domain_exception_handler(request: Request, exc: PostureGuardError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(directory_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
