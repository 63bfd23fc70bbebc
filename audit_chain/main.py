"""
FastAPI application entry point.
Configures the audit log, routers, and lifecycle events.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from audit_chain.core.config import get_settings
from audit_chain.core.logging import configure_logging, get_logger
from audit_chain.db.session import close_db
from audit_chain.modules.audit.router import router as audit_router
from audit_chain.modules.audit.service import AuditChainService, build_audit_log

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Opens the configured audit log on startup and releases it on shutdown.
    A service already placed on ``app.state`` (e.g. by tests) is kept.
    """
    settings = get_settings()
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
        audit_store_backend=settings.audit_store_backend,
    )

    if getattr(app.state, "audit_service", None) is None:
        log = await build_audit_log(settings)
        app.state.audit_service = AuditChainService(
            log,
            max_retries=settings.audit_append_max_retries,
            verify_yield_every=settings.audit_verify_yield_every,
        )
        logger.info("audit_log_initialized", backend=settings.audit_store_backend)

    yield

    await app.state.audit_service.log.close()
    await close_db()
    logger.info("application_shutdown_complete")


def create_application() -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application with all routers and
    settings applied.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )
    app.state.audit_service = None

    # Health check endpoint (no auth required)
    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, object]:
        checks: dict[str, str] = {}

        service: AuditChainService | None = app.state.audit_service
        if service is None:
            checks["audit_log"] = "unavailable"
        else:
            try:
                await service.log.tail_hash()
                checks["audit_log"] = "ok"
            except Exception:
                logger.warning("audit_log_health_check_failed", exc_info=True)
                checks["audit_log"] = "unavailable"

        overall = "healthy" if all(v == "ok" for v in checks.values()) else "degraded"
        return {"status": overall, "version": settings.version, "checks": checks}

    app.include_router(
        audit_router,
        prefix=f"{settings.api_v1_prefix}/audit",
        tags=["Audit"],
    )

    return app


# Application instance
app = create_application()
