from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from posguard.apps.api.deps import ServiceContainer
from posguard.apps.api.errors import (
    elevation_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from posguard.apps.api.response import API_VERSION
from posguard.apps.api.routes.audit import router as audit_router
from posguard.apps.api.routes.elevation import router as elevation_router
from posguard.apps.api.routes.health import router as health_router
from posguard.core.config import Settings, get_settings
from posguard.core.errors import ElevationError
from posguard.core.logging import configure_logging
from posguard.persistence.db import create_engine, create_session_factory
from posguard.services.cache import create_redis


def create_app(settings: Settings | None = None, *, services: ServiceContainer | None = None) -> FastAPI:
    resolved_settings = settings or (services.settings if services else get_settings())
    configure_logging(resolved_settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services is not None:
            yield
            return
        # Missing signing secrets raise here so the process never starts half-configured.
        engine = create_engine(settings=resolved_settings)
        redis = create_redis(resolved_settings.redis_url)
        app.state.services = ServiceContainer.build(
            settings=resolved_settings,
            session_factory=create_session_factory(engine),
            redis=redis,
            engine=engine,
        )
        try:
            yield
        finally:
            await redis.aclose()
            await engine.dispose()

    app = FastAPI(title="posguard API", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for audit correlation.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(ElevationError, elevation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(elevation_router, prefix=f"/{API_VERSION}")
    # Admin-only audit reads for security investigations.
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    return app
