"""PayHub: payment webhook ingestion and reconciliation service."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from payhub.core.logging import configure_structlog
from payhub.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import httpx
import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.api.routes import api_router
from payhub.core.config import Settings, get_settings
from payhub.db import init_db, close_db, get_session_factory
from payhub.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)
from payhub.payments.channel import EventChannel
from payhub.payments.clients import MercadoPagoClient, PayPalClient
from payhub.payments.distributor import LiveStatusDistributor
from payhub.payments.ledger import AdmissionFailureLog, EventLedger
from payhub.payments.orchestrator import Reconciler
from payhub.payments.order_lookup import SqlOrderLookup
from payhub.payments.providers.registry import build_registry
from payhub.payments.service import WebhookIngestor
from payhub.payments.snapshots import SnapshotStore
from payhub.payments.verification import PathSecretGuard

logger = structlog.get_logger(__name__)


def wire_services(
    app: FastAPI,
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http: httpx.AsyncClient | None = None,
) -> None:
    """Build the webhook pipeline and attach its components to ``app.state``."""
    channel = EventChannel()
    snapshots = SnapshotStore(reject_stale_updates=settings.reject_stale_updates)
    reconciler = Reconciler(session_factory, channel, SqlOrderLookup(session_factory), snapshots)

    app.state.session_factory = session_factory
    app.state.snapshots = snapshots
    app.state.reconciler = reconciler
    app.state.distributor = LiveStatusDistributor(reconciler.channel)
    app.state.registry = build_registry(settings)
    app.state.path_guard = PathSecretGuard(settings.webhook_path_secret)
    app.state.admission_log = AdmissionFailureLog(session_factory)
    app.state.ingestor = WebhookIngestor(
        session_factory,
        reconciler,
        ledger=EventLedger(),
        paypal_client=PayPalClient.from_settings(settings, http),
        mercadopago_client=MercadoPagoClient.from_settings(settings, http),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Graceful shutdown flag: SIGTERM flips this so /health returns 503
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    try:
        signal.signal(signal.SIGTERM, handle_sigterm)
    except ValueError:
        # Not the main thread (e.g. under a test client)
        logger.debug("sigterm_handler_skipped")

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    http = httpx.AsyncClient(timeout=settings.outbound_timeout_seconds)
    wire_services(app, settings, get_session_factory(), http)
    logger.info("webhook_pipeline_ready", providers=app.state.registry.routes)

    yield

    # Shutdown
    logger.info("shutdown_begin")
    app.state.distributor.close()
    await http.aclose()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    # Return sanitized response (no stack traces, no secrets)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # Return generic 500 (no internal details leaked)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Payment webhook ingestion, reconciliation and live status",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    # Exception handlers
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router)

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "payhub.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
