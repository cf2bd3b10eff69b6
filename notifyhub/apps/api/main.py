from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyhub.apps.api.errors import (
    http_exception_handler,
    notify_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from notifyhub.apps.api.response import API_VERSION
from notifyhub.apps.api.routes.admin import router as admin_router
from notifyhub.apps.api.routes.events import router as events_router
from notifyhub.apps.api.routes.health import router as health_router
from notifyhub.apps.api.routes.notifications import router as notifications_router
from notifyhub.apps.api.routes.ops import router as ops_router
from notifyhub.core.errors import NotifyError
from notifyhub.core.logging import configure_logging
from notifyhub.services.runtime import Runtime, build_runtime
from notifyhub.services.telemetry import increment_counter


def create_app(runtime: Runtime | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            app.state.runtime = build_runtime()
            await app.state.runtime.init_schema()
        try:
            yield
        finally:
            # Injected runtimes belong to the caller.
            if owned:
                await app.state.runtime.close()

    app = FastAPI(title="notifyhub API", lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_total.{response.status_code}")
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers.setdefault("X-Response-Time-Ms", f"{latency_ms:.1f}")
        return response

    @app.exception_handler(NotifyError)
    async def _notify_error_handler(request: Request, exc: NotifyError):
        return await notify_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(notifications_router, prefix=f"/{API_VERSION}")
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    # Health stays unversioned for load balancer health checks.
    app.include_router(health_router)

    return app


app = create_app()
