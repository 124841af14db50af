"""
Main FastAPI application.

Payment orchestration API for ride bookings with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ride_payments.config import Settings, get_settings
from ride_payments.core.errors import ReconciliationRiskError
from ride_payments.core.notifications import drain_background_notifications
from ride_payments.core.orchestrator import build_orchestrator
from ride_payments.core.reconciliation import ReconciliationEngine
from ride_payments.database.connection import close_db, get_session_factory, init_db
from ride_payments.integrations.webhook_handler import CallbackHandler
from ride_payments.monitoring.health import HealthCheck
from ride_payments.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    monitoring_router,
    payment_router,
    payout_router,
    refund_router,
    transaction_router,
    webhook_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the shared services on startup and releases them on shutdown.
    """
    settings: Settings = app.state.settings

    # Startup
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        use_aggregator=settings.use_aggregator,
    )

    # Initialize database
    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    http_client = httpx.AsyncClient(timeout=settings.provider_request_timeout)
    orchestrator = build_orchestrator(settings, http_client=http_client)
    session_factory = get_session_factory()

    app.state.http_client = http_client
    app.state.orchestrator = orchestrator
    app.state.callback_handler = CallbackHandler(orchestrator)
    app.state.reconciliation_engine = ReconciliationEngine(
        orchestrator, session_factory=session_factory
    )
    app.state.health_check = HealthCheck(
        settings=settings,
        adapters=orchestrator.adapters,
        session_factory=session_factory,
    )

    yield

    # Shutdown
    logger.info("application_shutdown")
    await drain_background_notifications()
    await orchestrator.idempotency_manager.close()
    await http_client.aclose()
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    # Add to structlog context
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        duration = time.time() - start_time
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=duration,
        )

        return response

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=duration,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def reconciliation_risk_handler(
    request: Request, exc: ReconciliationRiskError
) -> JSONResponse:
    """
    Answer a submission the provider accepted but that could not be recorded.

    The token is returned so the caller can quote it to support.
    """
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "message": "Transaction submitted but not recorded, support has been alerted",
            "provider": exc.provider,
            "transactionToken": exc.transaction_token,
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application settings (defaults to the environment)

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()

    application = FastAPI(
        title="Ride Payments",
        description=(
            "Mobile-money payment orchestration for ride bookings: MTN MoMo, "
            "Orange Money and pawaPay payins, driver payouts with retries, refunds, "
            "provider callbacks and reconciliation."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    application.state.settings = settings

    # CORS configuration
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.middleware("http")(add_request_id_middleware)

    application.add_exception_handler(ReconciliationRiskError, reconciliation_risk_handler)
    application.add_exception_handler(Exception, global_exception_handler)

    # Include routers
    application.include_router(payment_router)
    application.include_router(payout_router)
    application.include_router(refund_router)
    application.include_router(transaction_router)
    application.include_router(webhook_router)
    application.include_router(admin_router)
    application.include_router(monitoring_router)

    @application.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "use_aggregator": settings.use_aggregator,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ride_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
