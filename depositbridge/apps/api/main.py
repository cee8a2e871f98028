from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from depositbridge.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from depositbridge.apps.api.response import API_VERSION
from depositbridge.apps.api.routes.archive import router as archive_router
from depositbridge.apps.api.routes.audit import router as audit_router
from depositbridge.apps.api.routes.health import router as health_router
from depositbridge.apps.api.routes.integrations import router as integrations_router
from depositbridge.apps.api.routes.pending import router as pending_router
from depositbridge.apps.api.routes.polling import router as polling_router
from depositbridge.core.config import get_settings
from depositbridge.core.errors import DepositBridgeError
from depositbridge.core.logging import configure_logging
from depositbridge.services.runtime import Runtime, build_runtime


logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the API; tests pass a prebuilt runtime, servers let the lifespan build one."""

    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime if runtime is not None else await build_runtime(get_settings())
        try:
            yield
        finally:
            # Callers that injected a runtime own its disposal.
            if owned:
                await app.state.runtime.dispose()

    app = FastAPI(title="DepositBridge API", lifespan=lifespan)
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
        logger.info(
            "api_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    # Route every error class through the shared envelope handlers.
    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(DepositBridgeError)
    async def _domain_exception_handler(request: Request, exc: DepositBridgeError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    for router in (
        integrations_router,
        polling_router,
        pending_router,
        archive_router,
        audit_router,
        health_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
