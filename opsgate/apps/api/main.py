from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsgate.apps.api.dispatch import build_router, public_paths
from opsgate.apps.api.errors import (
    database_error_handler,
    gateway_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from opsgate.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from opsgate.core.config import Settings, get_settings
from opsgate.core.errors import GatewayError
from opsgate.core.logging import configure_logging
from opsgate.persistence.db import build_engine, build_sessionmaker
from opsgate.services.audit import AuditTrail
from opsgate.services.identity import DatabaseIdentityProvider, IdentityProvider
from opsgate.services.telemetry import record_request


logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    identity_provider: IdentityProvider | None = None,
) -> FastAPI:
    resolved = settings or get_settings()
    configure_logging(resolved.log_level)
    app = FastAPI(title="OpsGate Admin API")

    # Collaborators live on app.state so tests can build isolated apps.
    engine = build_engine(resolved)
    sessionmaker = build_sessionmaker(engine)
    identity = identity_provider or DatabaseIdentityProvider(sessionmaker)
    app.state.settings = resolved
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.identity = identity
    app.state.audit = AuditTrail(sessionmaker, identity)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(
            path=request.url.path,
            method=request.method,
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        logger.debug(
            "request_completed request_id=%s method=%s path=%s status=%s latency_ms=%.1f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    router = build_router()
    # Mount versioned v1 API routes.
    app.include_router(router, prefix=f"/{API_VERSION}")
    # Unversioned aliases for existing admin UI clients.
    app.include_router(router, include_in_schema=False)

    def custom_openapi() -> dict:
        # Inject bearer auth into the OpenAPI schema for every gated route.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="OpsGate Admin API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        public = {f"/{API_VERSION}{path}" for path in public_paths()}
        for path, operations in schema.get("paths", {}).items():
            if path in public:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
