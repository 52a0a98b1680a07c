"""
Role-based permission enforcement.

CRITICAL SECURITY REQUIREMENTS:
- Permissions MUST be enforced server-side for every protected endpoint
- UI permission gating is NOT security; treat it as UX only
- All checks go through edutenant.constants.permissions.allowed()

Usage:
    from edutenant.platform.rbac import require_permission, require_roles

    @router.get("/api/students")
    @require_permission(Feature.STUDENTS)
    async def list_students(request: Request):
        ...

    @router.get("/api/monitoring/audit-logs")
    @require_roles(Role.SUPER_ADMIN)
    async def audit_logs(request: Request):
        ...
"""

import logging
from functools import wraps
from typing import Any, Callable, Iterable, Optional, Union

from fastapi import Request
from sqlalchemy.orm import Session

from edutenant.constants.permissions import (
    Action,
    Feature,
    Role,
    action_for_method,
    allowed,
    is_report_restricted,
)
from edutenant.models.user import Student
from edutenant.platform.audit import audit_permission_denied
from edutenant.platform.errors import PermissionDeniedError
from edutenant.platform.tenant_context import TenantContext, get_tenant_context
from edutenant.repositories.base_repo import TenantScopedRepository

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "You do not have permission to perform this action"

_ROLE_DENIAL_CODES = {
    Role.TEACHER: "TEACHER_PERMISSION_DENIED",
    Role.STUDENT: "STUDENT_PERMISSION_DENIED",
}


def _get_request_from_args(args: tuple, kwargs: dict) -> Request:
    request = kwargs.get("request")
    if request is None:
        request = next((arg for arg in args if isinstance(arg, Request)), None)
    if request is None:
        raise ValueError("Request object not found in function arguments")
    return request


def has_permission(
    context: TenantContext,
    feature: Union[Feature, str],
    action: Union[Action, str],
) -> bool:
    return allowed(context.role, feature, action)


def has_role(context: TenantContext, *roles: Role) -> bool:
    return context.role in roles


def check_permission_or_raise(
    context: TenantContext,
    feature: Union[Feature, str],
    action: Union[Action, str],
    request: Optional[Request] = None,
) -> None:
    """
    Programmatic matrix check.

    Teachers and students get role-specific codes so clients can explain
    the denial.
    """
    if has_permission(context, feature, action):
        return

    feature_value = feature.value if isinstance(feature, Feature) else str(feature)
    action_value = action.value if isinstance(action, Action) else str(action)
    code = _ROLE_DENIAL_CODES.get(context.role, "PERMISSION_DENIED")

    logger.warning(
        "Permission denied",
        extra={
            "school_id": context.school_id,
            "user_id": context.user_id,
            "role": context.role.value,
            "feature": feature_value,
            "action": action_value,
            "path": request.url.path if request else None,
        },
    )
    audit_permission_denied(context, feature_value, action_value, code, request=request)
    raise PermissionDeniedError(
        DENIED_MESSAGE,
        code=code,
        details={"feature": feature_value, "action": action_value},
    )


def require_permission(feature: Feature, action: Optional[Action] = None) -> Callable:
    """
    Decorator requiring a matrix permission.

    When action is omitted it is derived from the HTTP method
    (GET -> view, POST -> create, PUT/PATCH -> update, DELETE -> delete).
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = _get_request_from_args(args, kwargs)
            context = get_tenant_context(request)
            check_permission_or_raise(
                context,
                feature,
                action or action_for_method(request.method),
                request,
            )
            return await func(*args, **kwargs)
        return wrapper
    return decorator


def require_roles(*roles: Role) -> Callable:
    """Decorator restricting an endpoint to the given roles."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = _get_request_from_args(args, kwargs)
            context = get_tenant_context(request)

            if not has_role(context, *roles):
                logger.warning(
                    "Role check failed",
                    extra={
                        "user_id": context.user_id,
                        "role": context.role.value,
                        "required_roles": [r.value for r in roles],
                        "path": request.url.path,
                    },
                )
                raise PermissionDeniedError("Insufficient permissions", code="INSUFFICIENT_ROLE")

            return await func(*args, **kwargs)
        return wrapper
    return decorator


# =============================================================================
# Report categories
# =============================================================================

def can_access_report(role: Union[Role, str], report_type: str) -> bool:
    """Report-category restriction, independent of the reports feature gate."""
    return not is_report_restricted(role, report_type)


def filter_reports(
    role: Union[Role, str],
    reports: Iterable[dict[str, Any]],
    key: str = "category",
) -> list[dict[str, Any]]:
    """Drop every report whose category is restricted for the role."""
    return [report for report in reports if can_access_report(role, report.get(key, ""))]


def check_report_access_or_raise(
    context: TenantContext,
    report_type: str,
    request: Optional[Request] = None,
) -> None:
    if can_access_report(context.role, report_type):
        return

    logger.warning(
        "Report access denied",
        extra={
            "school_id": context.school_id,
            "user_id": context.user_id,
            "role": context.role.value,
            "report_type": report_type,
        },
    )
    audit_permission_denied(
        context, Feature.REPORTS.value, report_type, "REPORT_ACCESS_DENIED", request=request
    )
    raise PermissionDeniedError(
        f"Access to {report_type} reports is not permitted for your role",
        code="REPORT_ACCESS_DENIED",
        details={"report_type": report_type},
    )


# =============================================================================
# Student data scoping
# =============================================================================

def resolve_own_student_id(db: Session, context: TenantContext) -> Optional[str]:
    """Student profile id for a student login, looked up inside the caller's school."""
    students = TenantScopedRepository(db, context, Student).list({"user_id": context.user_id}, limit=1)
    return students[0].id if students else None


def ensure_own_data(
    context: TenantContext,
    own_student_id: Optional[str],
    resource_student_id: Optional[str],
) -> None:
    """
    Students may only read records about themselves.

    Other roles pass; the matrix already limits what they can reach.
    """
    if context.role != Role.STUDENT:
        return
    if own_student_id is not None and str(resource_student_id) == str(own_student_id):
        return

    logger.warning(
        "Student attempted to access another student's data",
        extra={
            "user_id": context.user_id,
            "school_id": context.school_id,
            "resource_student_id": resource_student_id,
        },
    )
    raise PermissionDeniedError(
        "You can only access your own data",
        code="STUDENT_DATA_ACCESS_DENIED",
    )


def scope_student_filter(
    context: TenantContext,
    own_student_id: Optional[str],
    raw_filter: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """
    Force a student's list filter onto their own records.

    Client-supplied student_id, class_id and school_id are discarded.
    """
    scoped = dict(raw_filter or {})
    if context.role != Role.STUDENT:
        return scoped

    if own_student_id is None:
        raise PermissionDeniedError(
            "Student profile not found",
            code="STUDENT_DATA_ACCESS_DENIED",
        )

    for key in ("student_id", "class_id", "school_id"):
        scoped.pop(key, None)
    scoped["student_id"] = own_student_id
    return scoped
