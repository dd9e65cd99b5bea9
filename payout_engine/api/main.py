"""
Main FastAPI application.

Creator payout API with:
- CORS configuration
- Engine error mapping (error code + HTTP status from the exception)
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payout_engine import __version__
from payout_engine.config import Settings, get_settings
from payout_engine.core.exceptions import PayoutEngineError
from payout_engine.core.metrics_gateway import build_default_gateway
from payout_engine.core.orchestrator import build_orchestrator
from payout_engine.core.reconciliation import ReconciliationEngine
from payout_engine.database.connection import close_db, init_db
from payout_engine.integrations.webhook_handler import WebhookHandler
from payout_engine.monitoring.health import HealthCheck
from payout_engine.monitoring.logging import setup_logging

from .routes import (
    Services,
    admin_router,
    analytics_router,
    monitoring_router,
    payment_method_router,
    payout_router,
    view_tracking_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def build_services() -> Services:
    """Wire the engine to the real provider clients."""
    orchestrator = build_orchestrator()
    gateway = build_default_gateway()
    return Services(
        orchestrator=orchestrator,
        gateway=gateway,
        webhooks=WebhookHandler(orchestrator),
        reconciliation=ReconciliationEngine(orchestrator),
        health=HealthCheck(gateway),
    )


def create_app(
    services: Optional[Services] = None,
    manage_database: bool = True,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-built engine components (tests inject fakes here)
        manage_database: Create tables on startup and dispose the engine on shutdown
        settings: Overrides the environment settings (admin key, CORS, docs)
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

        if manage_database:
            try:
                await init_db()
                logger.info("database_initialized")
            except Exception as e:
                logger.error("database_initialization_failed", error=str(e))
                raise

        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()

        yield

        logger.info("application_shutdown")
        if manage_database:
            await close_db()
            logger.info("database_connections_closed")

    app = FastAPI(
        title="Creator Payout Engine",
        description=(
            "CPM view tracking and creator payouts over ACH, PayPal and crypto rails. "
            "Features: idempotent disbursement, distributed locking, webhook and polling "
            "reconciliation, and payout analytics."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )
    app.state.services = services
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Bind a request ID to the log context and echo it back."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        except Exception as e:
            logger.error(
                "request_failed", error=str(e), duration_seconds=time.time() - start_time
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PayoutEngineError)
    async def engine_exception_handler(request: Request, exc: PayoutEngineError) -> JSONResponse:
        log = logger.warning if exc.http_status < 500 else logger.error
        log(
            "request_rejected",
            error_code=exc.error_code,
            error=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "type": "InternalError",
                }
            },
        )

    app.include_router(payment_method_router)
    app.include_router(payout_router)
    app.include_router(view_tracking_router)
    app.include_router(analytics_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Service information."""
        return {
            "service": "payout-engine",
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    setup_logging()
    uvicorn.run(
        "payout_engine.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
