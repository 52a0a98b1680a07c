"""
Structured error classes for tenant isolation and permission enforcement.

Every error renders as {"error": <message>, "code": <MACHINE_READABLE_CODE>}
plus optional detail fields. Raw exception text is never returned in
production.

Audit write failures are deliberately absent: the audit logger recovers
them locally and never raises.
"""

import logging
import os
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base exception for errors that short-circuit a request."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {"error": self.message, "code": self.code, **self.details}

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class AuthenticationError(AppError):
    """No, invalid or expired credential."""
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "INVALID_TOKEN"


class MissingTenantContextError(AppError):
    """Authenticated non-super-admin identity without a school."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "MISSING_SCHOOL_CONTEXT"

    def __init__(self, message: str = "User must belong to a school", **kwargs):
        super().__init__(message, **kwargs)


class CrossTenantAccessDeniedError(AppError):
    """Resource belongs to a different school than the request context."""
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "CROSS_TENANT_ACCESS_DENIED"

    def __init__(self, message: str = "Access denied to this school's data", **kwargs):
        super().__init__(message, **kwargs)


class TenantReassignmentForbiddenError(AppError):
    """Attempt to move a row to another school."""
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "TENANT_REASSIGNMENT_FORBIDDEN"

    def __init__(self, message: str = "Cannot change school assignment", **kwargs):
        super().__init__(message, **kwargs)


class PermissionDeniedError(AppError):
    """Role lacks the feature/action in the permission matrix."""
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "PERMISSION_DENIED"


class FeatureUnavailableError(AppError):
    """Subscription lacks the feature or is not active/trial."""
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FEATURE_NOT_AVAILABLE"


class LimitExceededError(AppError):
    """School reached a plan limit (students, teachers)."""
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "LIMIT_EXCEEDED"


class UnscopedEntityError(AppError):
    """
    Model is in neither the tenant-scoped nor the global allow-list.

    Raised at the call site so a new table cannot silently bypass tenant
    filtering.
    """
    default_code = "UNSCOPED_ENTITY"


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """Return the inbound X-Correlation-ID or generate one."""
    return request.headers.get("X-Correlation-ID") or generate_correlation_id()


def _is_production() -> bool:
    return os.getenv("ENV", "development").lower() == "production"


def register_exception_handlers(app: FastAPI) -> None:
    """Render AppError subclasses and unhandled errors as structured JSON."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        logger.info(
            "Request short-circuited",
            extra={
                "path": request.url.path,
                "method": request.method,
                "code": exc.code,
                "status_code": exc.status_code,
            },
        )
        return exc.to_response()

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception",
            extra={"path": request.url.path, "method": request.method},
            exc_info=True,
        )
        content = {"error": "Internal server error", "code": "INTERNAL_ERROR"}
        if not _is_production():
            content["detail"] = str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=content,
        )
