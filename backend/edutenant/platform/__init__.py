"""
Platform-level modules for multi-tenant enforcement and security.

- errors: structured error taxonomy
- tenant_context: token verification, TenantContext, per-request DB session context
- audit: tenant audit trail
- query_interceptor: application-layer tenant filter
- rbac: role-based permission enforcement
- feature_gate: subscription feature gate
"""

from edutenant.platform.errors import (
    AppError,
    AuthenticationError,
    CrossTenantAccessDeniedError,
    FeatureUnavailableError,
    LimitExceededError,
    MissingTenantContextError,
    PermissionDeniedError,
    TenantReassignmentForbiddenError,
    UnscopedEntityError,
    register_exception_handlers,
)

from edutenant.platform.tenant_context import (
    TenantContext,
    TenantContextMiddleware,
    get_tenant_context,
    get_tenant_db_session,
    require_tenant_context,
    resolve_tenant_context,
    validate_school_access,
)

from edutenant.platform.audit import (
    AuditAction,
    AuditEvent,
    AuditLevel,
    TenantAuditLog,
    get_audit_logs,
    record,
)

__all__ = [
    "AppError",
    "AuthenticationError",
    "CrossTenantAccessDeniedError",
    "FeatureUnavailableError",
    "LimitExceededError",
    "MissingTenantContextError",
    "PermissionDeniedError",
    "TenantReassignmentForbiddenError",
    "UnscopedEntityError",
    "register_exception_handlers",
    "TenantContext",
    "TenantContextMiddleware",
    "get_tenant_context",
    "get_tenant_db_session",
    "require_tenant_context",
    "resolve_tenant_context",
    "validate_school_access",
    "AuditAction",
    "AuditEvent",
    "AuditLevel",
    "TenantAuditLog",
    "get_audit_logs",
    "record",
]
