"""
Tenant context resolution and enforcement.

CRITICAL SECURITY REQUIREMENTS:
- school_id is ALWAYS taken from the verified bearer token, NEVER from
  request body, query string or path
- Every non-super-admin request runs with a non-null school_id
- The context is built once per request and is immutable
- Database session variables are (re)applied on every request's session;
  nothing is assumed to survive on a pooled connection

Flow:
    TenantContextMiddleware verifies the JWT, builds an AuthenticatedIdentity,
    resolves it into a TenantContext and stores it on request.state.
    Routes reading tenant tables depend on get_tenant_db_session, which calls
    set_school_context() on the session before yielding it.
"""

import os
import logging
import uuid
from dataclasses import dataclass
from functools import wraps
from typing import Generator, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from fastapi import Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from edutenant.constants.permissions import Role
from edutenant.database.session import get_session_factory
from edutenant.platform.audit import (
    AuditAction,
    audit_auth_event,
    audit_cross_tenant_access,
    record_all,
    schedule_after_response,
    take_pending_events,
)
from edutenant.platform.errors import (
    AppError,
    AuthenticationError,
    CrossTenantAccessDeniedError,
    MissingTenantContextError,
)

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

PUBLIC_PATHS = {"/", "/health", "/docs", "/redoc", "/openapi.json"}

# Postgres "undefined_function"
_UNDEFINED_FUNCTION = "42883"


class AuthenticatedIdentity(BaseModel):
    """Verified identity handed over by the authentication layer."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    user_id: str = Field(..., alias="userId", description="Authenticated user")
    role: Role = Field(..., description="Role claim")
    school_id: Optional[str] = Field(None, alias="schoolId", description="Owning school")

    @field_validator("user_id", "school_id")
    @classmethod
    def _must_be_uuid(cls, value: Optional[str]) -> Optional[str]:
        # Both are bound as uuid in set_school_context() and the audit table
        if value is None:
            return value
        return str(uuid.UUID(str(value)))

    @classmethod
    def from_claims(cls, claims: dict) -> "AuthenticatedIdentity":
        """Build from JWT claims, accepting either sub or userId for the user."""
        data = dict(claims)
        if data.get("schoolId") == "":
            data.pop("schoolId")
        if "userId" not in data and "user_id" not in data and "sub" in data:
            data["userId"] = data["sub"]
        return cls.model_validate(data)


@dataclass(frozen=True)
class TenantContext:
    """
    Immutable per-request tenant context.

    school_id is None only for super_admin, meaning no tenant restriction.
    """
    school_id: Optional[str]
    user_id: str
    role: Role

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if self.role != Role.SUPER_ADMIN and not self.school_id:
            raise ValueError("school_id is required for non-super-admin roles")

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    def can_access_school(self, school_id: Optional[str]) -> bool:
        """
        Check whether a resource owned by school_id is visible to this context.

        SECURITY: call before returning any row whose school came from storage.
        """
        if self.is_super_admin:
            return True
        return school_id is not None and str(school_id) == self.school_id


def resolve_tenant_context(identity: AuthenticatedIdentity) -> TenantContext:
    """
    Derive the request's TenantContext from a verified identity.

    super_admin always gets school_id=None even if the token names a school.
    Raises MissingTenantContextError for any other role without a school.
    """
    if identity.role == Role.SUPER_ADMIN:
        return TenantContext(school_id=None, user_id=identity.user_id, role=identity.role)

    if not identity.school_id:
        raise MissingTenantContextError()

    return TenantContext(
        school_id=str(identity.school_id),
        user_id=identity.user_id,
        role=identity.role,
    )


# =============================================================================
# Database session context
# =============================================================================

def _is_undefined_function(exc: DBAPIError) -> bool:
    orig = exc.orig
    if getattr(orig, "pgcode", None) == _UNDEFINED_FUNCTION:
        return True
    message = str(orig).lower()
    return "function" in message and "does not exist" in message


def _set_session_variables(
    session: Session,
    school_id: Optional[str],
    role: Optional[str],
    user_id: Optional[str],
) -> bool:
    if session.get_bind().dialect.name != "postgresql":
        return False

    try:
        # Savepoint keeps the request transaction usable if the functions are missing
        with session.begin_nested():
            session.execute(
                text("SELECT set_school_context(CAST(:school_id AS uuid), :role)"),
                {"school_id": school_id, "role": role},
            )
            session.execute(
                text("SELECT set_config('app.current_user_id', :user_id, false)"),
                {"user_id": user_id or ""},
            )
    except DBAPIError as e:
        if not _is_undefined_function(e):
            raise
        logger.warning(
            "Row-level security functions not provisioned; "
            "isolation relies on the application layer",
            extra={"school_id": school_id, "error": str(e.orig)},
        )
        return False
    return True


def apply_session_context(session: Session, context: TenantContext) -> bool:
    """
    Set the database session variables for this request.

    Must run before the first tenant-scoped query of every request.
    Returns False when the database has no RLS layer (not Postgres, or the
    functions are not provisioned yet); the request continues either way.
    """
    applied = _set_session_variables(
        session,
        school_id=context.school_id,
        role=context.role.value,
        user_id=context.user_id,
    )
    if applied:
        logger.debug(
            "Session tenant context applied",
            extra={"school_id": context.school_id, "role": context.role.value},
        )
    return applied


def clear_session_context(session: Session) -> bool:
    """Reset the session variables before the connection goes back to the pool."""
    return _set_session_variables(session, school_id=None, role=None, user_id=None)


def get_tenant_db_session(request: Request) -> Generator[Session, None, None]:
    """
    FastAPI dependency for sessions that touch tenant-scoped tables.

    Applies the request's tenant context first, commits on success, rolls
    back on error and always clears the session variables before release.
    """
    context = get_tenant_context(request)
    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise AppError(
            "Database not configured",
            code="DATABASE_NOT_CONFIGURED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    session = SessionLocal()
    try:
        apply_session_context(session, context)
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        try:
            if clear_session_context(session):
                session.commit()
        except DBAPIError:
            # Discard the connection instead of pooling it with stale tenant state
            logger.error("Failed to clear session tenant context", exc_info=True)
            session.invalidate()
        session.close()


# =============================================================================
# Middleware
# =============================================================================

def _auth_failure(request: Request, error: AuthenticationError):
    """Structured 401 whose audit entry is written after the response is sent."""
    logger.warning(
        "Authentication failed",
        extra={"path": request.url.path, "method": request.method, "code": error.code},
    )
    response = error.to_response()
    response.background = BackgroundTask(
        audit_auth_event,
        action=AuditAction.LOGIN,
        success=False,
        request=request,
        reason=error.code,
    )
    return response


class TenantContextMiddleware:
    """
    Verifies the bearer token and attaches the TenantContext to the request.

    Errors are returned as responses rather than raised: this runs outside the
    router, where exception handlers do not apply.
    """

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        self._secret = secret
        self._algorithm = algorithm

    @property
    def secret(self) -> Optional[str]:
        return self._secret or os.getenv("JWT_SECRET")

    @property
    def algorithm(self) -> str:
        return self._algorithm or os.getenv("JWT_ALGORITHM", "HS256")

    async def __call__(self, request: Request, call_next):
        """
        SECURITY: school_id is ONLY extracted from the verified token.
        """
        path = request.url.path
        if path in PUBLIC_PATHS or not path.startswith("/api/"):
            return await call_next(request)

        if not self.secret:
            logger.error(
                "JWT_SECRET not configured - protected endpoint accessed",
                extra={"path": path, "method": request.method},
            )
            return AppError(
                "Authentication service not configured",
                code="AUTH_NOT_CONFIGURED",
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            ).to_response()

        credentials: Optional[HTTPAuthorizationCredentials] = await security(request)
        if not credentials or not credentials.credentials:
            return _auth_failure(
                request, AuthenticationError("Access token required", code="AUTH_TOKEN_REQUIRED")
            )

        try:
            claims = jwt.decode(credentials.credentials, self.secret, algorithms=[self.algorithm])
            identity = AuthenticatedIdentity.from_claims(claims)
        except ExpiredSignatureError:
            return _auth_failure(request, AuthenticationError("Token expired", code="TOKEN_EXPIRED"))
        except (InvalidTokenError, ValidationError):
            return _auth_failure(request, AuthenticationError("Invalid token", code="INVALID_TOKEN"))

        try:
            context = resolve_tenant_context(identity)
        except MissingTenantContextError as e:
            logger.warning(
                "Authenticated user has no school",
                extra={"user_id": identity.user_id, "role": identity.role.value},
            )
            return e.to_response()

        request.state.tenant_context = context
        logger.info(
            "Request authenticated",
            extra={
                "school_id": context.school_id,
                "user_id": context.user_id,
                "role": context.role.value,
                "path": path,
            },
        )

        try:
            response = await call_next(request)
        except Exception:
            pending = take_pending_events(request)
            if pending:
                await run_in_threadpool(record_all, pending)
            raise

        # Denials queued by the handler are written once the response is sent
        schedule_after_response(response, take_pending_events(request))
        return response


def get_tenant_context(request: Request) -> TenantContext:
    """
    Extract tenant context from request state.

    Raises MissingTenantContextError if the middleware did not attach one.
    """
    context = getattr(request.state, "tenant_context", None)
    if context is None:
        logger.error("Route handler accessed without tenant context", extra={
            "path": request.url.path
        })
        raise MissingTenantContextError("Tenant context not available")
    return context


def require_tenant_context(func):
    """
    Decorator to ensure tenant context exists before the handler executes.

    Usage:
        @router.get("/api/students")
        @require_tenant_context
        async def list_students(request: Request):
            ...
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        request = kwargs.get("request")
        if request is None:
            request = next((arg for arg in args if isinstance(arg, Request)), None)
        if request is None:
            raise ValueError("Request object not found in function arguments")

        get_tenant_context(request)
        return await func(*args, **kwargs)

    return wrapper


def validate_school_access(
    context: TenantContext,
    resource_school_id: Optional[str],
    request: Optional[Request] = None,
) -> None:
    """
    Ensure a resource belongs to the caller's school.

    On mismatch records one security-level cross_tenant_attempt entry and
    raises CrossTenantAccessDeniedError.
    """
    if context.can_access_school(resource_school_id):
        return

    logger.warning(
        "Cross-tenant access attempt",
        extra={
            "user_id": context.user_id,
            "school_id": context.school_id,
            "attempted_school_id": resource_school_id,
        },
    )
    audit_cross_tenant_access(context, str(resource_school_id), request=request)
    raise CrossTenantAccessDeniedError()
