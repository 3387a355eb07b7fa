"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Lifespan manager — logging, DB tables, and the long-lived services
     (provider selector, notifier, settlement reconciler)
  2. CORS middleware — allows frontend origins to make cross-origin requests
  3. Exception handlers — maps domain errors to HTTP responses
  4. Router registration — mounts all API endpoint groups

Running locally:
    uvicorn app.main:app --reload

Webhooks need a publicly reachable URL (LNBITS_WEBHOOK_URL,
OPENNODE_CALLBACK_URL); without one, invoices still settle through the
status endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import models  # noqa: F401  (registers every table on Base.metadata)
from app.config import settings
from app.database import AsyncSessionLocal, Base, engine
from app.exceptions import register_exception_handlers
from app.logging_config import configure_logging
from app.providers.selector import build_selector
from app.routers import admin, notifications, wallet, webhooks
from app.services.notification_service import PaymentNotifier
from app.services.settlement_service import SettlementReconciler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager (replaces deprecated @app.on_event).

    Startup:
      Configures logging, creates all database tables if they don't exist,
      and builds the provider selector exactly once from configuration.
      There is no runtime provider switch; changing LIGHTNING_PROVIDER
      is a redeploy.

    Shutdown:
      Waits for in-flight payment notifications, closes provider HTTP
      clients, and disposes of the database engine.
    """
    # --- Startup ---
    configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    selector = build_selector(settings)
    notifier = PaymentNotifier()
    app.state.provider_selector = selector
    app.state.notifier = notifier
    app.state.session_factory = AsyncSessionLocal
    app.state.reconciler = SettlementReconciler(
        AsyncSessionLocal,
        notifier,
        max_attempts=settings.SETTLEMENT_MAX_ATTEMPTS,
        retry_backoff=settings.SETTLEMENT_RETRY_BACKOFF_SECONDS,
    )
    logger.info("Sats Jar API started", extra={"provider": selector.primary.name})

    yield

    # --- Shutdown ---
    await notifier.drain()
    await selector.aclose()
    await engine.dispose()


# Create the FastAPI application instance
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Lightning savings jars: invoice settlement and ledger reconciliation",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

# CORS for the jar frontend; ALLOWED_ORIGINS lists its origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(wallet.router, prefix="/wallet", tags=["Wallet"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])
app.include_router(notifications.router, prefix="/ws", tags=["Notifications"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness check. Does not touch the database or the provider."""
    return {"status": "ok", "version": settings.APP_VERSION}
