"""
FastAPI application entry point for the school tenancy core.

Multi-tenant enforcement is enabled via TenantContextMiddleware.
All /api routes require a valid JWT carrying the tenant context.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import inspect

from edutenant import __version__
from edutenant.api.routes import features_router, monitoring_router, reports_router
from edutenant.database.rls import is_row_level_security_installed
from edutenant.database.session import get_db_session_sync, is_database_configured
from edutenant.middleware.audit_middleware import AuditLoggingMiddleware
from edutenant.platform.audit import AUDIT_TABLE
from edutenant.platform.errors import register_exception_handlers
from edutenant.platform.tenant_context import TenantContextMiddleware

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting school tenancy API")

    app.state.auth_configured = bool(os.getenv("JWT_SECRET"))
    if not app.state.auth_configured:
        logger.warning("JWT_SECRET not set. Protected endpoints will return 503.")

    app.state.database_configured = is_database_configured()
    app.state.row_level_security = False
    app.state.audit_table_ready = False
    if not app.state.database_configured:
        logger.error("DATABASE_URL is not set. Tenant endpoints will return 503.")
    else:
        try:
            for db in get_db_session_sync():
                connection = db.connection()
                app.state.row_level_security = is_row_level_security_installed(connection)
                app.state.audit_table_ready = inspect(connection).has_table(AUDIT_TABLE)
        except Exception as e:
            logger.exception("Tenancy readiness check errored", extra={"error": str(e)})

        if not app.state.row_level_security:
            logger.warning("Row-level security not provisioned; isolation relies on the application layer")
        if not app.state.audit_table_ready:
            logger.warning("Audit table missing; audit entries go to the fallback logger")

    logger.info(
        "Tenant context middleware ready",
        extra={
            "auth_enabled": app.state.auth_configured,
            "row_level_security": app.state.row_level_security,
            "audit_table_ready": app.state.audit_table_ready,
        },
    )

    yield

    logger.info("Shutting down school tenancy API")


def create_app() -> FastAPI:
    app = FastAPI(
        title="School Tenancy API",
        description="Multi-tenant school platform with strict tenant isolation",
        version=__version__,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    # CRITICAL: tenant context middleware. The audit middleware is added
    # after it and therefore wraps it, so rejected requests are audited too.
    app.middleware("http")(TenantContextMiddleware())
    app.add_middleware(AuditLoggingMiddleware)

    app.include_router(monitoring_router)
    app.include_router(features_router)
    app.include_router(reports_router)

    @app.get("/health")
    async def health():
        """Liveness check; bypasses authentication."""
        return {"status": "ok", "version": __version__}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
