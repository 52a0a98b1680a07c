"""
Security alert channel for the audit trail.

Security-level audit events (cross-tenant attempts, authentication
failures) are surfaced here in addition to being persisted, so they reach
on-call through the log aggregator instead of waiting for someone to query
tenant_audit_logs. Repeated audit write failures are escalated the same way.

Alerts are delivered as structured log records on the
"edutenant.security.alerts" logger.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from threading import Lock
from typing import Optional

from edutenant.config.tenancy_settings import get_tenancy_settings

logger = logging.getLogger("edutenant.security.alerts")


class AuditAlertType(str, Enum):
    """Types of audit system alerts."""
    AUDIT_LOGGING_FAILURE = "audit_logging_failure"
    CROSS_TENANT_ACCESS = "cross_tenant_access"
    AUTHENTICATION_FAILURE = "authentication_failure"
    SECURITY_EVENT = "security_event"


class AuditAlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class AuditAlert:
    """Represents an audit system alert."""
    alert_type: AuditAlertType
    severity: AuditAlertSeverity
    title: str
    message: str
    metadata: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditAlertManager:
    """
    Manages security alerts.

    Applies a per-key cooldown so a single misbehaving client cannot flood
    the channel, and tracks audit write failures inside a sliding window.
    Audit writes run on worker threads, so state is guarded by a lock.
    """

    _instance: Optional["AuditAlertManager"] = None

    def __init__(self):
        settings = get_tenancy_settings()
        self._cooldown = timedelta(seconds=settings.alert_cooldown_seconds)
        self._failure_threshold = settings.logging_failure_threshold
        self._failure_window = timedelta(seconds=settings.logging_failure_window_seconds)
        self._failure_counts: dict[str, list[datetime]] = {}
        self._recent_alerts: dict[str, datetime] = {}
        self._lock = Lock()

    @classmethod
    def get_instance(cls) -> "AuditAlertManager":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def _should_alert(self, alert_type: str, key: str) -> bool:
        """Check if alert should be sent (cooldown period)."""
        full_key = f"{alert_type}:{key}"
        now = datetime.now(timezone.utc)
        with self._lock:
            last_sent = self._recent_alerts.get(full_key)
            if last_sent and now - last_sent < self._cooldown:
                return False
            self._recent_alerts[full_key] = now
        return True

    def _send_alert(self, alert: AuditAlert) -> None:
        """Send alert via structured logging."""
        log_extra = {
            "alert_type": alert.alert_type.value,
            "severity": alert.severity.value,
            "title": alert.title,
            "alert_metadata": alert.metadata,
        }

        if alert.severity == AuditAlertSeverity.CRITICAL:
            logger.critical(alert.message, extra=log_extra)
        elif alert.severity == AuditAlertSeverity.ERROR:
            logger.error(alert.message, extra=log_extra)
        elif alert.severity == AuditAlertSeverity.WARNING:
            logger.warning(alert.message, extra=log_extra)
        else:
            logger.info(alert.message, extra=log_extra)

    def record_logging_failure(
        self,
        school_id: Optional[str] = None,
        error_type: str = "unknown",
    ) -> bool:
        """
        Record an audit write failure and alert if the threshold is reached.

        Returns True if an alert was triggered.
        """
        now = datetime.now(timezone.utc)
        key = school_id or "global"

        with self._lock:
            recent = [
                ts for ts in self._failure_counts.get(key, [])
                if ts > now - self._failure_window
            ]
            recent.append(now)
            self._failure_counts[key] = recent
            failure_count = len(recent)

        if failure_count < self._failure_threshold:
            return False
        if not self._should_alert(AuditAlertType.AUDIT_LOGGING_FAILURE.value, key):
            return False

        window_seconds = int(self._failure_window.total_seconds())
        self._send_alert(AuditAlert(
            alert_type=AuditAlertType.AUDIT_LOGGING_FAILURE,
            severity=AuditAlertSeverity.CRITICAL,
            title="Audit Logging Failures Detected",
            message=f"Audit logging has failed {failure_count} times in {window_seconds} seconds",
            metadata={
                "school_id": school_id,
                "failure_count": failure_count,
                "error_type": error_type,
                "window_seconds": window_seconds,
            },
        ))
        return True

    def alert_cross_tenant_access(
        self,
        requesting_school: Optional[str],
        target_school: Optional[str],
        user_id: Optional[str],
        correlation_id: Optional[str] = None,
    ) -> bool:
        """
        Alert on a cross-tenant access attempt.

        Returns True if an alert was sent.
        """
        key = f"{requesting_school}:{user_id}:{target_school}"
        if not self._should_alert(AuditAlertType.CROSS_TENANT_ACCESS.value, key):
            return False

        self._send_alert(AuditAlert(
            alert_type=AuditAlertType.CROSS_TENANT_ACCESS,
            severity=AuditAlertSeverity.CRITICAL,
            title="Cross-Tenant Access Attempt",
            message=f"User {user_id} from school {requesting_school} attempted to access school {target_school}",
            metadata={
                "requesting_school": requesting_school,
                "target_school": target_school,
                "user_id": user_id,
                "correlation_id": correlation_id,
            },
        ))
        return True

    def alert_security_event(
        self,
        action: str,
        message: Optional[str],
        user_id: Optional[str] = None,
        school_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        """Surface any other security-level audit event (auth failures and the like)."""
        alert_type = (
            AuditAlertType.AUTHENTICATION_FAILURE
            if action == "login"
            else AuditAlertType.SECURITY_EVENT
        )
        key = f"{action}:{user_id or ip_address or 'anonymous'}"
        if not self._should_alert(alert_type.value, key):
            return False

        self._send_alert(AuditAlert(
            alert_type=alert_type,
            severity=AuditAlertSeverity.WARNING,
            title="Security Event",
            message=message or f"Security event: {action}",
            metadata={
                "action": action,
                "user_id": user_id,
                "school_id": school_id,
                "ip_address": ip_address,
                **(metadata or {}),
            },
        ))
        return True


def get_audit_alert_manager() -> AuditAlertManager:
    """Get the audit alert manager singleton."""
    return AuditAlertManager.get_instance()


def reset_audit_alert_manager() -> None:
    """Reset singleton (for tests only)."""
    AuditAlertManager._instance = None
