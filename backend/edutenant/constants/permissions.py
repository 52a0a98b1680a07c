"""
Canonical permission matrix for school tenants.

IMPORTANT: This is the single source of truth for role permissions.
All permission checks MUST go through allowed() or the helpers below.
UI gating is UX only - server-side enforcement is security.

The matrix is role -> feature -> set of actions. It is built once at import
and exposed through read-only mappings. A feature missing from a role's
table is denied; there is no implicit default-allow.

Two layers decide whether a request may proceed:
- This matrix (structural role permission)
- The tenant's subscription feature set (see edutenant.platform.feature_gate)
A plan feature never grants an action the matrix forbids.
"""

from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Union


class Role(str, Enum):
    """User roles carried in the authenticated identity."""
    SUPER_ADMIN = "super_admin"
    SCHOOL_ADMIN = "school_admin"
    PRINCIPAL = "principal"
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"
    FINANCE_OFFICER = "finance_officer"
    SUPPORT_STAFF = "support_staff"


class Feature(str, Enum):
    """Application areas the matrix is keyed by."""
    DASHBOARD = "dashboard"
    TEACHERS = "teachers"
    STUDENTS = "students"
    CLASSES = "classes"
    ATTENDANCE = "attendance"
    HOMEWORK = "homework"
    EVENTS = "events"
    COMPLAINTS = "complaints"
    FEES = "fees"
    FEE_MANAGEMENT = "fee_management"
    REPORTS = "reports"


class Action(str, Enum):
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PlanFeature(str, Enum):
    """
    Feature keys stored in a subscription plan's feature map.

    Values are the camelCase keys already present in stored plans.
    """
    ATTENDANCE = "attendance"
    HOMEWORK = "homework"
    EVENTS = "events"
    REPORTS = "reports"
    SMS_NOTIFICATIONS = "smsNotifications"
    EMAIL_NOTIFICATIONS = "emailNotifications"
    MOBILE_APP = "mobileApp"
    CUSTOM_BRANDING = "customBranding"
    API_ACCESS = "apiAccess"
    ADVANCED_REPORTS = "advancedReports"
    BULK_IMPORT = "bulkImport"
    PARENT_PORTAL = "parentPortal"
    ONLINE_EXAMS = "onlineExams"
    FEE_MANAGEMENT = "feeManagement"
    LIBRARY_MANAGEMENT = "libraryManagement"
    TRANSPORT_MANAGEMENT = "transportManagement"


class ReportCategory(str, Enum):
    """Report types that can be requested from the reports area."""
    ATTENDANCE = "attendance"
    ACADEMIC = "academic"
    HOMEWORK = "homework"
    ENROLLMENT = "enrollment"
    EVENTS = "events"
    FINANCIAL = "financial"
    FEES = "fees"
    PAYMENTS = "payments"
    REVENUE = "revenue"
    EXPENSES = "expenses"
    FEE_COLLECTION = "fee_collection"
    PAYMENT_HISTORY = "payment_history"


# =============================================================================
# Matrix construction
# =============================================================================

ALL_ACTIONS: FrozenSet[Action] = frozenset(Action)
NO_ACTIONS: FrozenSet[Action] = frozenset()
VIEW_ONLY: FrozenSet[Action] = frozenset({Action.VIEW})


def _full_access() -> dict[Feature, FrozenSet[Action]]:
    return {feature: ALL_ACTIONS for feature in Feature}


# Teachers never see fees. Complaints: read and respond, never file or remove.
TEACHER_PERMISSIONS: dict[Feature, FrozenSet[Action]] = {
    Feature.DASHBOARD: ALL_ACTIONS,
    Feature.TEACHERS: VIEW_ONLY,
    Feature.STUDENTS: ALL_ACTIONS,
    Feature.CLASSES: VIEW_ONLY,
    Feature.ATTENDANCE: ALL_ACTIONS,
    Feature.HOMEWORK: ALL_ACTIONS,
    Feature.EVENTS: ALL_ACTIONS,
    Feature.COMPLAINTS: frozenset({Action.VIEW, Action.UPDATE}),
    Feature.FEES: NO_ACTIONS,
    Feature.FEE_MANAGEMENT: NO_ACTIONS,
    Feature.REPORTS: VIEW_ONLY,
}

STUDENT_PERMISSIONS: dict[Feature, FrozenSet[Action]] = {
    Feature.DASHBOARD: VIEW_ONLY,
    Feature.TEACHERS: NO_ACTIONS,
    Feature.STUDENTS: NO_ACTIONS,
    Feature.CLASSES: NO_ACTIONS,
    Feature.ATTENDANCE: NO_ACTIONS,
    Feature.HOMEWORK: VIEW_ONLY,
    Feature.EVENTS: VIEW_ONLY,
    Feature.COMPLAINTS: frozenset({Action.VIEW, Action.CREATE, Action.UPDATE}),
    Feature.FEES: VIEW_ONLY,
    Feature.FEE_MANAGEMENT: NO_ACTIONS,
    Feature.REPORTS: NO_ACTIONS,
}

PARENT_PERMISSIONS: dict[Feature, FrozenSet[Action]] = {
    Feature.DASHBOARD: VIEW_ONLY,
    Feature.ATTENDANCE: VIEW_ONLY,
    Feature.HOMEWORK: VIEW_ONLY,
    Feature.EVENTS: VIEW_ONLY,
    Feature.COMPLAINTS: frozenset({Action.VIEW, Action.CREATE}),
    Feature.FEES: VIEW_ONLY,
}

FINANCE_OFFICER_PERMISSIONS: dict[Feature, FrozenSet[Action]] = {
    Feature.DASHBOARD: VIEW_ONLY,
    Feature.STUDENTS: VIEW_ONLY,
    Feature.FEES: ALL_ACTIONS,
    Feature.FEE_MANAGEMENT: ALL_ACTIONS,
    Feature.REPORTS: VIEW_ONLY,
}

SUPPORT_STAFF_PERMISSIONS: dict[Feature, FrozenSet[Action]] = {
    Feature.DASHBOARD: VIEW_ONLY,
    Feature.ATTENDANCE: VIEW_ONLY,
    Feature.EVENTS: VIEW_ONLY,
    Feature.COMPLAINTS: frozenset({Action.VIEW, Action.UPDATE}),
}

PRINCIPAL_PERMISSIONS: dict[Feature, FrozenSet[Action]] = {
    **_full_access(),
    Feature.FEES: frozenset({Action.VIEW, Action.CREATE, Action.UPDATE}),
    Feature.FEE_MANAGEMENT: frozenset({Action.VIEW, Action.CREATE, Action.UPDATE}),
}


def _freeze(table: Mapping[Role, Mapping[Feature, FrozenSet[Action]]]):
    return MappingProxyType({
        role: MappingProxyType(dict(features)) for role, features in table.items()
    })


PERMISSION_MATRIX: Mapping[Role, Mapping[Feature, FrozenSet[Action]]] = _freeze({
    Role.SUPER_ADMIN: _full_access(),
    Role.SCHOOL_ADMIN: _full_access(),
    Role.PRINCIPAL: PRINCIPAL_PERMISSIONS,
    Role.TEACHER: TEACHER_PERMISSIONS,
    Role.STUDENT: STUDENT_PERMISSIONS,
    Role.PARENT: PARENT_PERMISSIONS,
    Role.FINANCE_OFFICER: FINANCE_OFFICER_PERMISSIONS,
    Role.SUPPORT_STAFF: SUPPORT_STAFF_PERMISSIONS,
})


# Matrix features that additionally require a plan feature to be enabled
GATED_FEATURES: Mapping[Feature, PlanFeature] = MappingProxyType({
    Feature.ATTENDANCE: PlanFeature.ATTENDANCE,
    Feature.HOMEWORK: PlanFeature.HOMEWORK,
    Feature.EVENTS: PlanFeature.EVENTS,
    Feature.REPORTS: PlanFeature.REPORTS,
    Feature.FEE_MANAGEMENT: PlanFeature.FEE_MANAGEMENT,
})


# =============================================================================
# Restricted report categories
# =============================================================================

FINANCIAL_REPORTS: FrozenSet[ReportCategory] = frozenset({
    ReportCategory.FINANCIAL,
    ReportCategory.FEES,
    ReportCategory.PAYMENTS,
    ReportCategory.REVENUE,
    ReportCategory.EXPENSES,
    ReportCategory.FEE_COLLECTION,
    ReportCategory.PAYMENT_HISTORY,
})

RESTRICTED_REPORTS: Mapping[Role, FrozenSet[ReportCategory]] = MappingProxyType({
    Role.TEACHER: FINANCIAL_REPORTS,
    Role.STUDENT: FINANCIAL_REPORTS,
    Role.PARENT: FINANCIAL_REPORTS,
    Role.SUPPORT_STAFF: FINANCIAL_REPORTS,
})

# Categories that need the advancedReports plan feature on top of reports
ADVANCED_REPORTS: FrozenSet[ReportCategory] = frozenset({
    ReportCategory.REVENUE,
    ReportCategory.EXPENSES,
    ReportCategory.ENROLLMENT,
})


# =============================================================================
# Lookups
# =============================================================================

def _coerce(enum_cls, value) -> Optional[Enum]:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        return None


def allowed(
    role: Union[Role, str],
    feature: Union[Feature, str],
    action: Union[Action, str],
) -> bool:
    """
    Check the static matrix. Unknown roles, features or actions are denied.
    """
    role_enum = _coerce(Role, role)
    feature_enum = _coerce(Feature, feature)
    action_enum = _coerce(Action, action)
    if role_enum is None or feature_enum is None or action_enum is None:
        return False

    features = PERMISSION_MATRIX.get(role_enum, MappingProxyType({}))
    return action_enum in features.get(feature_enum, NO_ACTIONS)


def get_role_permissions(role: Union[Role, str]) -> dict[str, list[str]]:
    """Flatten a role's table for API responses: feature -> sorted actions."""
    role_enum = _coerce(Role, role)
    if role_enum is None:
        return {}
    return {
        feature.value: sorted(action.value for action in actions)
        for feature, actions in PERMISSION_MATRIX[role_enum].items()
        if actions
    }


def get_restricted_reports(role: Union[Role, str]) -> FrozenSet[ReportCategory]:
    role_enum = _coerce(Role, role)
    if role_enum is None:
        return frozenset(ReportCategory)
    return RESTRICTED_REPORTS.get(role_enum, frozenset())


def is_report_restricted(role: Union[Role, str], report_type: str) -> bool:
    """True when the role may not request this report category."""
    category = _coerce(ReportCategory, report_type)
    if category is None:
        return True
    return category in get_restricted_reports(role)


def action_for_method(method: str) -> Action:
    """Map an HTTP method onto the matrix action it exercises."""
    return _METHOD_ACTIONS.get(method.upper(), Action.VIEW)


_METHOD_ACTIONS = {
    "GET": Action.VIEW,
    "HEAD": Action.VIEW,
    "OPTIONS": Action.VIEW,
    "POST": Action.CREATE,
    "PUT": Action.UPDATE,
    "PATCH": Action.UPDATE,
    "DELETE": Action.DELETE,
}

