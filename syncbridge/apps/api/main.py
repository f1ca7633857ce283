from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request

from syncbridge.apps.api.errors import syncbridge_exception_handler
from syncbridge.apps.api.routes.health import router as health_router
from syncbridge.apps.api.routes.service_integrations import router as service_integrations_router
from syncbridge.core.config import get_settings
from syncbridge.core.errors import SyncBridgeError
from syncbridge.core.logging import configure_logging


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # The integration context owns a pooled HTTP client; close it with the app.
    context = getattr(app.state, "integration_context", None)
    if context is not None:
        await context.http.aclose()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name, lifespan=lifespan)
    app.state.integration_context = None

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "request_completed",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round((time.monotonic() - start) * 1000.0, 2),
            },
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(SyncBridgeError)
    async def _syncbridge_exception_handler(request: Request, exc: SyncBridgeError):
        return await syncbridge_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(service_integrations_router)
    return app


app = create_app()
