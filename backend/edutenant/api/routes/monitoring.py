"""
Monitoring API routes for the tenancy core.

Provides endpoints for:
- Tenancy health (database, row-level security, audit table)
- Paginated audit log retrieval (super-admin only)
- Tenant statistics across schools (super-admin only)
- Per-school record counts (own school only, unless super-admin)
- Subscription status changes (super-admin only)

SECURITY: school_metrics audits any attempt to read another school.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy import func, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from edutenant.constants.permissions import Role
from edutenant.database.rls import is_row_level_security_installed
from edutenant.database.session import get_db_session
from edutenant.models import (
    Attendance,
    Complaint,
    Event,
    Homework,
    School,
    Student,
    SubscriptionStatus,
    Teacher,
)
from edutenant.platform.audit import AUDIT_TABLE, AuditLevel, get_audit_logs
from edutenant.platform.feature_gate import change_subscription_status
from edutenant.platform.rbac import require_roles
from edutenant.platform.tenant_context import (
    get_tenant_context,
    get_tenant_db_session,
    validate_school_access,
)
from edutenant.repositories.base_repo import TenantScopedRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])

METRIC_MODELS = {
    "students": Student,
    "teachers": Teacher,
    "attendance": Attendance,
    "homework": Homework,
    "events": Event,
    "complaints": Complaint,
}


# =============================================================================
# Response Models
# =============================================================================

class TenancyHealthResponse(BaseModel):
    status: str
    database: str
    row_level_security: bool
    audit_table: bool
    checked_at: str


class SchoolMetricsResponse(BaseModel):
    school_id: str
    counts: Dict[str, int]


class SubscriptionStatusUpdate(BaseModel):
    status: SubscriptionStatus


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/health", response_model=TenancyHealthResponse)
@require_roles(Role.SUPER_ADMIN, Role.SCHOOL_ADMIN)
async def tenancy_health(request: Request, db: Session = Depends(get_db_session)):
    """Report whether each isolation layer is provisioned."""
    database = "healthy"
    rls_installed = False
    audit_table = False
    try:
        db.execute(text("SELECT 1"))
        connection = db.connection()
        rls_installed = is_row_level_security_installed(connection)
        audit_table = inspect(connection).has_table(AUDIT_TABLE)
    except SQLAlchemyError:
        logger.error("Tenancy health check failed", exc_info=True)
        database = "unhealthy"

    degraded = database != "healthy" or not audit_table
    return TenancyHealthResponse(
        status="degraded" if degraded else "healthy",
        database=database,
        row_level_security=rls_installed,
        audit_table=audit_table,
        checked_at=datetime.utcnow().isoformat(),
    )


@router.get("/audit-logs")
@require_roles(Role.SUPER_ADMIN)
async def list_audit_logs(
    request: Request,
    school_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    level: Optional[AuditLevel] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    db: Session = Depends(get_db_session),
) -> Dict[str, Any]:
    """Paginated audit trail; limit is capped at the configured maximum."""
    return get_audit_logs(
        db,
        school_id=school_id,
        user_id=user_id,
        action=action,
        level=level,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )


@router.get("/tenant-stats")
@require_roles(Role.SUPER_ADMIN)
async def tenant_stats(request: Request, db: Session = Depends(get_db_session)) -> Dict[str, Any]:
    rows = (
        db.query(School.subscription_status, func.count(School.id))
        .group_by(School.subscription_status)
        .all()
    )
    by_status = {status_: count for status_, count in rows}
    return {
        "total_schools": sum(by_status.values()),
        "by_subscription_status": by_status,
        "active_schools": db.query(func.count(School.id)).filter(School.is_active.is_(True)).scalar(),
    }


@router.get("/school-metrics/{school_id}", response_model=SchoolMetricsResponse)
async def school_metrics(
    request: Request,
    school_id: str,
    db: Session = Depends(get_tenant_db_session),
):
    """Record counts for one school. Non-super-admins may only ask for their own."""
    context = get_tenant_context(request)
    validate_school_access(context, school_id, request)

    counts = {
        name: TenantScopedRepository(db, context, model, request=request).count({"school_id": school_id})
        for name, model in METRIC_MODELS.items()
    }
    return SchoolMetricsResponse(school_id=school_id, counts=counts)


@router.put("/schools/{school_id}/subscription")
@require_roles(Role.SUPER_ADMIN)
async def update_subscription_status(
    request: Request,
    school_id: str,
    payload: SubscriptionStatusUpdate,
    db: Session = Depends(get_db_session),
) -> Dict[str, Any]:
    school = change_subscription_status(
        db, get_tenant_context(request), school_id, payload.status, request=request
    )
    return {"school_id": school.id, "subscription_status": school.subscription_status}
