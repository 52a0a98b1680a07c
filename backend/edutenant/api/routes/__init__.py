"""HTTP routes exposing the tenancy core."""

from edutenant.api.routes.features import router as features_router
from edutenant.api.routes.monitoring import router as monitoring_router
from edutenant.api.routes.reports import router as reports_router

__all__ = ["features_router", "monitoring_router", "reports_router"]
