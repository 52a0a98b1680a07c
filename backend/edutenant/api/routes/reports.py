"""
Reports API.

Three independent checks apply, in order:
1. Matrix: the role may view reports at all
2. Report category: the role may request this category (financial
   categories are restricted for teachers, students, parents, support staff)
3. Feature gate: the plan enables reports (and advancedReports for
   advanced categories) and the subscription is active or trial
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from edutenant.constants.permissions import (
    ADVANCED_REPORTS,
    Feature,
    PlanFeature,
    ReportCategory,
)
from edutenant.models import Attendance, Event, Fee, Homework, HomeworkSubmission, Student, StudentFee
from edutenant.platform.feature_gate import check_feature_or_raise, check_features_or_raise, resolve_feature_set
from edutenant.platform.rbac import check_report_access_or_raise, filter_reports, require_permission
from edutenant.platform.tenant_context import TenantContext, get_tenant_context, get_tenant_db_session
from edutenant.repositories.base_repo import TenantScopedRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reports", tags=["reports"])

REPORT_CATALOG: List[Dict[str, str]] = [
    {"id": "attendance-summary", "name": "Attendance summary", "category": ReportCategory.ATTENDANCE.value},
    {"id": "academic-progress", "name": "Academic progress", "category": ReportCategory.ACADEMIC.value},
    {"id": "homework-completion", "name": "Homework completion", "category": ReportCategory.HOMEWORK.value},
    {"id": "enrollment-trends", "name": "Enrollment trends", "category": ReportCategory.ENROLLMENT.value},
    {"id": "events-calendar", "name": "Events calendar", "category": ReportCategory.EVENTS.value},
    {"id": "financial-overview", "name": "Financial overview", "category": ReportCategory.FINANCIAL.value},
    {"id": "fee-structure", "name": "Fee structure", "category": ReportCategory.FEES.value},
    {"id": "payments-received", "name": "Payments received", "category": ReportCategory.PAYMENTS.value},
    {"id": "revenue", "name": "Revenue", "category": ReportCategory.REVENUE.value},
    {"id": "expenses", "name": "Expenses", "category": ReportCategory.EXPENSES.value},
    {"id": "fee-collection", "name": "Fee collection", "category": ReportCategory.FEE_COLLECTION.value},
    {"id": "payment-history", "name": "Payment history", "category": ReportCategory.PAYMENT_HISTORY.value},
]

REPORT_SOURCES = {
    ReportCategory.ATTENDANCE: Attendance,
    ReportCategory.ACADEMIC: HomeworkSubmission,
    ReportCategory.HOMEWORK: Homework,
    ReportCategory.ENROLLMENT: Student,
    ReportCategory.EVENTS: Event,
    ReportCategory.FINANCIAL: Fee,
    ReportCategory.FEES: Fee,
    ReportCategory.PAYMENTS: StudentFee,
    ReportCategory.REVENUE: StudentFee,
    ReportCategory.EXPENSES: Fee,
    ReportCategory.FEE_COLLECTION: StudentFee,
    ReportCategory.PAYMENT_HISTORY: StudentFee,
}


def _gate(db: Session, context: TenantContext, category: Optional[ReportCategory] = None) -> None:
    if context.is_super_admin and context.school_id is None:
        return
    feature_set = resolve_feature_set(db, context.school_id)
    if category in ADVANCED_REPORTS:
        check_features_or_raise(feature_set, [PlanFeature.REPORTS, PlanFeature.ADVANCED_REPORTS])
    else:
        check_feature_or_raise(feature_set, PlanFeature.REPORTS)


@router.get("")
@require_permission(Feature.REPORTS)
async def list_reports(request: Request, db: Session = Depends(get_tenant_db_session)) -> Dict[str, Any]:
    """Report catalog visible to the caller's role."""
    context = get_tenant_context(request)
    _gate(db, context)
    reports = filter_reports(context.role, REPORT_CATALOG)
    return {"reports": reports, "count": len(reports)}


@router.get("/{report_type}")
@require_permission(Feature.REPORTS)
async def run_report(
    request: Request,
    report_type: str,
    db: Session = Depends(get_tenant_db_session),
) -> Dict[str, Any]:
    context = get_tenant_context(request)
    check_report_access_or_raise(context, report_type, request)

    # Unknown categories were refused above
    category = ReportCategory(report_type.lower())

    _gate(db, context, category)

    model = REPORT_SOURCES[category]
    record_count = TenantScopedRepository(db, context, model, request=request).count()
    logger.info(
        "Report generated",
        extra={"school_id": context.school_id, "user_id": context.user_id, "report_type": report_type},
    )
    return {
        "report_type": category.value,
        "school_id": context.school_id,
        "record_count": record_count,
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
