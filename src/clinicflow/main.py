"""
Clinicflow - referral workflow and secure intake export.

FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from clinicflow.api.routes import (
    automation_router,
    intake_packages_router,
    referrals_router,
    telemetry_router,
)
from clinicflow.config import Settings, settings as default_settings
from clinicflow.db.orm import Base
from clinicflow.db.repositories import SqlReferralStore
from clinicflow.db.store import PackageNotFound, ReferralNotFound, ReferralStore
from clinicflow.export.errors import ExportError
from clinicflow.export.orchestrator import ExportOrchestrator
from clinicflow.export.retention import RetentionSweeper
from clinicflow.models.base import utcnow
from clinicflow.models.intake_package import PackageStateError
from clinicflow.notifications.dispatcher import LoggingSink, NotificationDispatcher, WebhookSink
from clinicflow.security.encryption import KeyRing
from clinicflow.services.workflow_service import (
    PackageExpired,
    PackageUnavailable,
    ReferralWorkflowService,
)
from clinicflow.storage.client import ObjectStorageClient, StorageError
from clinicflow.telemetry.registry import ConnectionRegistry, TelemetrySink
from clinicflow.workflow.transitions import (
    ConcurrentModification,
    InvalidTransition,
    ReasonRequired,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, default_settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def _build_dispatcher(settings: Settings, registry: ConnectionRegistry) -> NotificationDispatcher:
    sinks = [LoggingSink(), TelemetrySink(registry)]
    if settings.notification_webhook_url:
        sinks.append(
            WebhookSink(
                settings.notification_webhook_url,
                api_key=settings.integration_api_key,
                timeout=settings.integration_timeout_seconds,
            )
        )
    return NotificationDispatcher(sinks)


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[ReferralStore] = None,
    storage_client: Optional[ObjectStorageClient] = None,
    key_ring: Optional[KeyRing] = None,
) -> FastAPI:
    """
    Build the application.

    Components not supplied are created from ``settings`` at startup; a
    SQLAlchemy engine is only created when no store is given.
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown events."""
        logger.info("Starting clinicflow...")

        engine = None
        referral_store = store
        if referral_store is None:
            engine = create_async_engine(settings.database_url, echo=settings.debug, pool_pre_ping=True)
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            referral_store = SqlReferralStore(
                async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            )

        registry = ConnectionRegistry(token=settings.telemetry_token)
        dispatcher = _build_dispatcher(settings, registry)
        objects = storage_client or ObjectStorageClient(settings)
        orchestrator = ExportOrchestrator(key_ring or KeyRing.from_settings(settings), objects, settings)

        app.state.settings = settings
        app.state.telemetry = registry
        app.state.dispatcher = dispatcher
        app.state.orchestrator = orchestrator
        app.state.workflow_service = ReferralWorkflowService(referral_store, orchestrator, objects, dispatcher)
        app.state.retention_sweeper = RetentionSweeper(referral_store, objects, dispatcher)

        prerequisites = orchestrator.validate_export_prerequisites()
        if not prerequisites["ready"]:
            logger.warning(f"Export not ready: {'; '.join(prerequisites['issues'])}")
        logger.info("Clinicflow started successfully")

        yield

        logger.info("Shutting down clinicflow...")
        await dispatcher.drain()
        await registry.close_all()
        for sink in dispatcher.sinks:
            if isinstance(sink, WebhookSink):
                await sink.close()
        if engine is not None:
            await engine.dispose()
        logger.info("Clinicflow shutdown complete")

    app = FastAPI(
        title="Clinicflow",
        description="Referral workflow and secure intake package export",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
    )

    def _error(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": error, "message": message, **extra})

    @app.exception_handler(ReferralNotFound)
    @app.exception_handler(PackageNotFound)
    async def not_found_handler(request: Request, exc: LookupError) -> JSONResponse:
        return _error(404, "Not found", str(exc))

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidTransition) -> JSONResponse:
        return _error(
            400,
            "Invalid transition",
            str(exc),
            current_status=exc.current.value,
            target_status=exc.target_value,
        )

    @app.exception_handler(ReasonRequired)
    async def reason_required_handler(request: Request, exc: ReasonRequired) -> JSONResponse:
        return _error(400, "Reason required", str(exc), target_status=exc.target.value)

    @app.exception_handler(ConcurrentModification)
    async def conflict_handler(request: Request, exc: ConcurrentModification) -> JSONResponse:
        return _error(409, "Concurrent modification", str(exc), current_version=exc.actual_version)

    @app.exception_handler(PackageUnavailable)
    @app.exception_handler(PackageStateError)
    async def package_state_handler(request: Request, exc: Exception) -> JSONResponse:
        return _error(409, "Package unavailable", str(exc))

    @app.exception_handler(PackageExpired)
    async def expired_handler(request: Request, exc: PackageExpired) -> JSONResponse:
        return _error(410, "Package expired", str(exc))

    @app.exception_handler(ExportError)
    async def export_error_handler(request: Request, exc: ExportError) -> JSONResponse:
        logger.error(f"Export failed at {exc.step.value}: {type(exc).__name__}")
        return _error(502, "Export failed", str(exc), step=exc.step.value, retryable=exc.artifacts is not None)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        return _error(502, "Storage error", str(exc))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions securely."""
        logger.exception(f"Unhandled exception: {type(exc).__name__}")
        if settings.is_production:
            return _error(500, "Internal server error", "An unexpected error occurred.")
        return _error(500, "Internal server error", str(exc), type=type(exc).__name__)

    @app.get("/health")
    async def health_check(request: Request) -> dict[str, Any]:
        """Health check including export readiness."""
        prerequisites = request.app.state.orchestrator.validate_export_prerequisites()
        return {
            "status": "healthy" if prerequisites["ready"] else "degraded",
            "timestamp": utcnow().isoformat(),
            "version": VERSION,
            "export": prerequisites,
            "telemetry_clients": request.app.state.telemetry.count,
        }

    app.include_router(referrals_router, prefix="/api/v1/referrals", tags=["referrals"])
    app.include_router(intake_packages_router, prefix="/api/v1/intake-packages", tags=["intake-packages"])
    app.include_router(automation_router, prefix="/api/v1/automation", tags=["automation"])
    app.include_router(telemetry_router, prefix="/api/v1/telemetry", tags=["telemetry"])
    return app


app = create_app()
