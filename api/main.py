"""InvoiceSync API — FastAPI entry point.

Registers middleware, routers, and lifecycle hooks. Platforms listed in
INTEGRATIONS are connected at startup from INTEGRATION_<PLATFORM>_* env vars.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import IntegrationHub, enabled_platforms
from api.middleware import RequestIdMiddleware
from platforms import PLATFORM_DEFAULTS, build_registry
from sync_core.audit_repository import SqlAuditLog
from sync_core.database import build_session_factory, close_db, init_db
from sync_core.errors import AuthError, ConfigurationError, IntegrationError
from sync_core.observability.logging_setup import configure_logging
from sync_core.observability.tracing import setup_tracing

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:3001"
).split(",")
VERSION = "0.1.0"


async def _build_hub(http_client: httpx.AsyncClient, session_factory=None) -> IntegrationHub:
    audit_log = SqlAuditLog(session_factory) if session_factory is not None else None
    hub = IntegrationHub(build_registry(), http_client, audit_log=audit_log)
    hub.connect_from_env(enabled_platforms(), PLATFORM_DEFAULTS)
    return hub


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(hub: Optional[IntegrationHub] = None) -> FastAPI:
    """Build the app. Passing a hub skips env-based wiring (tests, embedding)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup/shutdown hooks."""
        configure_logging()
        setup_tracing("invoicesync")

        http_client = None
        session_factory = None
        if hub is None:
            database_url = os.getenv("DATABASE_URL")
            if database_url:
                # Audit logs persist to SQL; create the sync_logs table on first boot
                session_factory = build_session_factory(database_url)
                await init_db(session_factory)
            http_client = httpx.AsyncClient()
            app.state.hub = await _build_hub(http_client, session_factory)
        else:
            app.state.hub = hub
        logger.info("InvoiceSync API started (%s)", ", ".join(app.state.hub.platforms) or "no integrations")
        yield
        await app.state.hub.close()
        if http_client is not None:
            await http_client.aclose()
        if session_factory is not None:
            await close_db(session_factory)
        logger.info("InvoiceSync API shutting down")

    app = FastAPI(
        title="InvoiceSync",
        description="Third-party CRM and project-management synchronization for invoicing",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request id for log correlation
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(IntegrationError)
    async def integration_error_handler(request: Request, exc: IntegrationError):
        if isinstance(exc, AuthError):
            status = 401
        elif isinstance(exc, ConfigurationError):
            status = 400
        else:
            status = 502
        return JSONResponse(status_code=status, content=exc.to_dict())

    # -----------------------------------------------------------------------
    # Routers
    # -----------------------------------------------------------------------

    from api.sync import router as sync_router
    from api.webhooks import router as webhooks_router

    app.include_router(webhooks_router, tags=["Webhooks"])
    app.include_router(sync_router, tags=["Sync"])

    # -----------------------------------------------------------------------
    # Health & root
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {"status": "healthy", "version": VERSION}

    @app.get("/")
    async def root(request: Request):
        return {
            "name": "InvoiceSync",
            "version": VERSION,
            "docs": "/docs",
            "integrations": request.app.state.hub.platforms,
        }

    return app


app = create_app()
