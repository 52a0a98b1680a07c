"""
Tenant audit trail.

Append-only record of mutations, denials and security-relevant events.
Two writers feed the same table (tenant_audit_logs):

- Application layer: record() from middleware and route helpers. Best effort
  and never raises. Entries produced while a request is in flight are queued
  with defer() and written after the response is sent.
- Database layer: the audit_tenant_access() trigger installed by
  edutenant.database.rls, synchronous with the mutating transaction.

If the table does not exist yet the entry goes to the fallback logger only.
Security-level entries are additionally pushed to the alert channel.
"""

import ipaddress
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, FrozenSet, Optional, TYPE_CHECKING

from fastapi import Request, Response
from starlette.background import BackgroundTask, BackgroundTasks
from sqlalchemy import Column, String, Text, DateTime, JSON, Index, func
from sqlalchemy.dialects.postgresql import JSONB, INET
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from edutenant.config.tenancy_settings import get_tenancy_settings
from edutenant.database.session import get_db_session_sync
from edutenant.db_base import Base
from edutenant.models.base import GUID, generate_uuid
from edutenant.monitoring.audit_alerts import get_audit_alert_manager

if TYPE_CHECKING:
    from edutenant.platform.tenant_context import TenantContext

JSONType = JSON().with_variant(JSONB(), "postgresql")
IPAddressType = String(45).with_variant(INET(), "postgresql")

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("edutenant.audit.fallback")

AUDIT_TABLE = "tenant_audit_logs"


class AuditLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SECURITY = "security"


class AuditAction(str, Enum):
    """
    Canonical audit actions.

    HTTP-originated entries use "<METHOD>_<path>" instead; trigger rows use
    the SQL operation (INSERT, UPDATE, DELETE).
    """
    LOGIN = "login"
    LOGOUT = "logout"
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    CROSS_TENANT_ATTEMPT = "cross_tenant_attempt"
    PERMISSION_DENIED = "permission_denied"
    SUBSCRIPTION_CHANGE = "subscription_change"
    BULK_OPERATION = "bulk_operation"


class SensitiveDataRedactor:
    """
    Redacts credentials and personal data before an entry is persisted.

    Redacted fields keep their key and become "[REDACTED]".
    """

    REDACTED_FIELDS: FrozenSet[str] = frozenset({
        "password",
        "password_hash",
        "current_password",
        "new_password",
        "token",
        "access_token",
        "refresh_token",
        "authorization",
        "api_key",
        "secret",
        "credentials",
        "card_number",
        "cvv",
        "bank_account",
        "national_id",
    })

    REDACTION_MARKER = "[REDACTED]"

    @classmethod
    def redact(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                key: cls.REDACTION_MARKER
                if str(key).lower() in cls.REDACTED_FIELDS
                else cls.redact(value)
                for key, value in data.items()
            }
        if isinstance(data, list):
            return [cls.redact(item) for item in data]
        return data


class TenantAuditLog(Base):
    """
    Audit log row.

    CRITICAL: append-only. Nothing in this codebase updates or deletes rows.
    The metadata column is mapped as event_metadata because "metadata" is
    reserved on declarative classes.
    """
    __tablename__ = AUDIT_TABLE

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    user_id = Column(GUID(), nullable=True)
    school_id = Column(GUID(), nullable=True)
    action = Column(String(255), nullable=False)
    table_name = Column(String(100), nullable=True)
    record_id = Column(String(255), nullable=True)
    old_values = Column(JSONType, nullable=True)
    new_values = Column(JSONType, nullable=True)
    ip_address = Column(IPAddressType, nullable=True)
    user_agent = Column(Text, nullable=True)
    level = Column(String(10), nullable=False, default=AuditLevel.INFO.value)
    message = Column(Text, nullable=True)
    event_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
    )

    __table_args__ = (
        Index("tenant_audit_logs_user_id", "user_id"),
        Index("tenant_audit_logs_school_id", "school_id"),
        Index("tenant_audit_logs_created_at", "created_at"),
        Index("tenant_audit_logs_action", "action"),
        Index("tenant_audit_logs_level", "level"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "school_id": self.school_id,
            "action": self.action,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "ip_address": str(self.ip_address) if self.ip_address else None,
            "user_agent": self.user_agent,
            "level": self.level,
            "message": self.message,
            "metadata": self.event_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class AuditEvent:
    """
    Audit entry before persistence.

    Metadata and row images are redacted in to_dict().
    """
    action: str
    level: AuditLevel = AuditLevel.INFO
    user_id: Optional[str] = None
    school_id: Optional[str] = None
    table_name: Optional[str] = None
    record_id: Optional[str] = None
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    message: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_security(self) -> bool:
        return _value(self.level) == AuditLevel.SECURITY.value

    def to_dict(self) -> dict[str, Any]:
        """Column values for TenantAuditLog, with sensitive keys redacted."""
        return {
            "user_id": self.user_id,
            "school_id": self.school_id,
            "action": _value(self.action),
            "table_name": self.table_name,
            "record_id": str(self.record_id) if self.record_id is not None else None,
            "old_values": SensitiveDataRedactor.redact(self.old_values),
            "new_values": SensitiveDataRedactor.redact(self.new_values),
            "ip_address": _valid_ip(self.ip_address),
            "user_agent": self.user_agent,
            "level": _value(self.level),
            "message": self.message,
            "event_metadata": SensitiveDataRedactor.redact(self.metadata),
            "created_at": self.created_at,
        }


def _value(member: Any) -> Any:
    return member.value if isinstance(member, Enum) else member


def _valid_ip(value: Optional[str]) -> Optional[str]:
    # INET rejects non-addresses such as the "testclient" host
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def extract_client_info(request: Request) -> tuple[Optional[str], Optional[str]]:
    """
    Extract client IP and user agent from request.

    Handles X-Forwarded-For for proxied requests.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None

    return ip_address, request.headers.get("User-Agent")


# =============================================================================
# Writers
# =============================================================================

def _is_missing_table_error(exc: Exception) -> bool:
    orig = getattr(exc, "orig", exc)
    if getattr(orig, "pgcode", None) == "42P01":
        return True
    text_ = str(orig).lower()
    return "no such table" in text_ or (AUDIT_TABLE in text_ and "does not exist" in text_)


def write_audit_log_sync(db: Session, event: AuditEvent) -> Optional[TenantAuditLog]:
    """
    Insert one audit row using a session dedicated to auditing.

    CRITICAL: never raises. On failure the session is rolled back and the
    entry is written to the fallback logger. Returns None in that case.
    """
    audit_id = generate_uuid()
    try:
        entry = TenantAuditLog(id=audit_id, **event.to_dict())
        db.add(entry)
        db.commit()

        logger.info(
            "Audit event recorded",
            extra={
                "audit_id": audit_id,
                "school_id": event.school_id,
                "user_id": event.user_id,
                "action": _value(event.action),
                "level": _value(event.level),
            },
        )
        return entry

    except SQLAlchemyError as e:
        try:
            db.rollback()
        except SQLAlchemyError:
            logger.debug("Rollback after audit failure also failed", exc_info=True)

        if _is_missing_table_error(e):
            # Not provisioned yet: degrade to process logs without alerting
            _write_fallback_log(event, audit_id, "audit table missing", alert=False)
        else:
            _write_fallback_log(event, audit_id, type(e).__name__)
        return None


def _write_fallback_log(
    event: AuditEvent,
    audit_id: str,
    error_reason: str,
    alert: bool = True,
) -> None:
    """Write the entry to the fallback logger when the table is unavailable."""
    fallback_entry = {
        "event_id": audit_id,
        **event.to_dict(),
        "created_at": event.created_at.isoformat(),
        "fallback_reason": error_reason,
    }
    fallback_logger.warning(
        "Audit log fallback",
        extra={"audit_entry": json.dumps(fallback_entry, default=str)},
    )

    if alert:
        get_audit_alert_manager().record_logging_failure(
            school_id=event.school_id,
            error_type=error_reason,
        )


def _raise_alert(event: AuditEvent) -> None:
    logger.warning(
        "SECURITY ALERT",
        extra={
            "action": _value(event.action),
            "user_id": event.user_id,
            "school_id": event.school_id,
            "audit_message": event.message,
        },
    )
    try:
        if _value(event.action) == AuditAction.CROSS_TENANT_ATTEMPT.value:
            get_audit_alert_manager().alert_cross_tenant_access(
                requesting_school=event.school_id,
                target_school=event.metadata.get("attempted_school_id"),
                user_id=event.user_id,
                correlation_id=event.metadata.get("correlation_id"),
            )
        else:
            get_audit_alert_manager().alert_security_event(
                action=_value(event.action),
                message=event.message,
                user_id=event.user_id,
                school_id=event.school_id,
                ip_address=event.ip_address,
            )
    except Exception:
        logger.error("Failed to raise security alert", exc_info=True)


def record(event: AuditEvent) -> None:
    """
    Record an audit event. Never raises.

    Always writes through a session of its own, so the caller's business
    transaction is neither committed nor rolled back as a side effect.
    Security-level events are also surfaced on the alert channel.
    """
    if event.is_security:
        _raise_alert(event)

    try:
        for session in get_db_session_sync():
            write_audit_log_sync(session, event)
    except RuntimeError as e:
        _write_fallback_log(event, generate_uuid(), str(e), alert=False)
    except Exception as e:
        logger.error("Unexpected audit failure", exc_info=True)
        _write_fallback_log(event, generate_uuid(), type(e).__name__)


def record_all(events: list[AuditEvent]) -> None:
    for event in events:
        record(event)


# =============================================================================
# Deferred writes
# =============================================================================
#
# Entries produced while a request is being handled are parked on
# request.state and written by TenantContextMiddleware once the response has
# gone out, so the audit insert is never on the request's own path.

PENDING_EVENTS_STATE = "pending_audit_events"


def defer(event: AuditEvent, request: Optional[Request]) -> None:
    """Queue the event on the request, or write it now when there is no request."""
    if request is None:
        record(event)
        return

    pending = getattr(request.state, PENDING_EVENTS_STATE, None)
    if pending is None:
        pending = []
        setattr(request.state, PENDING_EVENTS_STATE, pending)
    pending.append(event)


def take_pending_events(request: Request) -> list[AuditEvent]:
    """Remove and return the events queued on the request."""
    pending = getattr(request.state, PENDING_EVENTS_STATE, None) or []
    setattr(request.state, PENDING_EVENTS_STATE, [])
    return list(pending)


def schedule_after_response(response: Response, events: list[AuditEvent]) -> None:
    """Write the events once the response has been sent, after any existing background work."""
    if not events:
        return

    task = BackgroundTask(record_all, list(events))
    if response.background is None:
        response.background = task
        return

    tasks = BackgroundTasks()
    tasks.tasks.extend([response.background, task])
    response.background = tasks


# =============================================================================
# Convenience recorders
# =============================================================================

def _client_fields(request: Optional[Request]) -> dict[str, Optional[str]]:
    if request is None:
        return {"ip_address": None, "user_agent": None}
    ip_address, user_agent = extract_client_info(request)
    return {"ip_address": ip_address, "user_agent": user_agent}


def audit_cross_tenant_access(
    context: "TenantContext",
    attempted_school_id: str,
    request: Optional[Request] = None,
) -> None:
    """Record exactly one security entry for a cross-tenant attempt."""
    defer(
        AuditEvent(
            action=AuditAction.CROSS_TENANT_ATTEMPT,
            level=AuditLevel.SECURITY,
            user_id=context.user_id,
            school_id=context.school_id,
            message=(
                f"User {context.user_id} from school {context.school_id} "
                f"attempted to access school {attempted_school_id}"
            ),
            metadata={
                "attempted_school_id": str(attempted_school_id),
                "actual_school_id": context.school_id,
                "role": _value(context.role),
                "url": str(request.url.path) if request else None,
                "method": request.method if request else None,
                "correlation_id": getattr(request.state, "correlation_id", None) if request else None,
            },
            **_client_fields(request),
        ),
        request,
    )


def audit_auth_event(
    action: AuditAction,
    success: bool,
    user_id: Optional[str] = None,
    school_id: Optional[str] = None,
    request: Optional[Request] = None,
    reason: Optional[str] = None,
) -> None:
    """
    Failures are security-level; successes are informational.

    Written immediately: callers run it as a response background task.
    """
    label = _value(action)
    record(
        AuditEvent(
            action=action,
            level=AuditLevel.INFO if success else AuditLevel.SECURITY,
            user_id=user_id,
            school_id=school_id,
            message=f"Authentication {label} {'succeeded' if success else 'failed'}",
            metadata={"success": success, "reason": reason},
            **_client_fields(request),
        )
    )


def audit_data_change(
    context: "TenantContext",
    action: AuditAction,
    table_name: str,
    record_id: Optional[str] = None,
    old_values: Optional[dict[str, Any]] = None,
    new_values: Optional[dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> None:
    defer(
        AuditEvent(
            action=action,
            level=AuditLevel.INFO,
            user_id=context.user_id,
            school_id=context.school_id,
            table_name=table_name,
            record_id=record_id,
            old_values=old_values,
            new_values=new_values,
            message=f"Data {_value(action)} on {table_name}",
            metadata={"source": "application"},
            **_client_fields(request),
        ),
        request,
    )


def audit_subscription_event(
    context: "TenantContext",
    school_id: str,
    change: str,
    old_values: Optional[dict[str, Any]] = None,
    new_values: Optional[dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> None:
    defer(
        AuditEvent(
            action=AuditAction.SUBSCRIPTION_CHANGE,
            level=AuditLevel.INFO,
            user_id=context.user_id,
            school_id=school_id,
            table_name="schools",
            record_id=school_id,
            old_values=old_values,
            new_values=new_values,
            message=f"Subscription {change}",
            metadata={"change": change},
            **_client_fields(request),
        ),
        request,
    )


def audit_permission_denied(
    context: "TenantContext",
    feature: str,
    action: str,
    code: str,
    request: Optional[Request] = None,
) -> None:
    defer(
        AuditEvent(
            action=AuditAction.PERMISSION_DENIED,
            level=AuditLevel.WARN,
            user_id=context.user_id,
            school_id=context.school_id,
            message=f"{_value(context.role)} denied {action} on {feature}",
            metadata={"feature": feature, "action": action, "code": code},
            **_client_fields(request),
        ),
        request,
    )


# =============================================================================
# Queries
# =============================================================================

def get_audit_logs(
    db: Session,
    school_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    level: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = 1,
    limit: Optional[int] = None,
) -> dict[str, Any]:
    """
    Paginated audit log retrieval, newest first.

    Any combination of filters may be given. limit is capped by
    audit_log_query.max_page_size.
    """
    settings = get_tenancy_settings()
    limit = min(max(limit or settings.default_page_size, 1), settings.max_page_size)
    page = max(page, 1)

    query = db.query(TenantAuditLog)
    if school_id:
        query = query.filter(TenantAuditLog.school_id == school_id)
    if user_id:
        query = query.filter(TenantAuditLog.user_id == user_id)
    if action:
        query = query.filter(TenantAuditLog.action == action)
    if level:
        query = query.filter(TenantAuditLog.level == _value(level))
    if start_date:
        query = query.filter(TenantAuditLog.created_at >= start_date)
    if end_date:
        query = query.filter(TenantAuditLog.created_at <= end_date)

    total = query.count()
    rows = (
        query.order_by(TenantAuditLog.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "logs": [row.to_dict() for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }
