"""MeisterDesk billing — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meisterdesk.api.v1.billing import router as billing_router
from meisterdesk.api.v1.entitlements import router as entitlements_router
from meisterdesk.api.v1.webhooks import router as webhooks_router
from meisterdesk.billing.providers import get_provider_adapter
from meisterdesk.config import settings
from meisterdesk.database import async_session_factory, engine
from meisterdesk.entitlements.service import EntitlementService

# Configure root logger so all meisterdesk.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup: one entitlement service (resolver + cache) for the process
    app.state.entitlements = EntitlementService.from_settings(settings, async_session_factory)
    # Log missing provider configuration early; checkout answers 503 until fixed
    await get_provider_adapter().initialize()
    yield
    # Shutdown: cancel live reconciliation pollers and dispose the engine
    await app.state.entitlements.aclose()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription billing and feature entitlements for the MeisterDesk craftsman platform.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Location"],
)

# Routers
app.include_router(billing_router)
app.include_router(entitlements_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
