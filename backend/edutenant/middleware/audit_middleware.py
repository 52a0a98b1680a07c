"""
HTTP audit middleware.

Writes one tenant_audit_logs entry per significant request AFTER the
response has been sent. The write runs as a background task, so it adds no
latency and its failure cannot change the response.

A request is significant when any of these hold:
- the method is not GET
- the response status is 4xx or 5xx
- the path contains an authentication or administrative marker

This layer is best effort. Mutations on tenant tables are also captured
synchronously by the database trigger.

Added AFTER TenantContextMiddleware in main.py so it wraps it and sees both
the tenant context and authentication failures.
"""

import json
import logging
import time
from typing import Any, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from edutenant.config.tenancy_settings import get_tenancy_settings
from edutenant.platform.audit import (
    AuditEvent,
    AuditLevel,
    SensitiveDataRedactor,
    extract_client_info,
    schedule_after_response,
)
from edutenant.platform.errors import get_correlation_id

logger = logging.getLogger(__name__)


def is_significant(
    method: str,
    status_code: int,
    path: str,
    path_markers: Iterable[str] = ("/auth/", "/admin/"),
) -> bool:
    if method.upper() != "GET":
        return True
    if status_code >= 400:
        return True
    return any(marker in path for marker in path_markers)


def summarize_body(body: bytes, content_type: Optional[str], max_chars: int) -> Any:
    """Redacted, truncated view of a request or response body."""
    if not body:
        return None
    if content_type and "json" in content_type:
        try:
            parsed = json.loads(body)
        except ValueError:
            parsed = None
        if parsed is not None:
            text_ = json.dumps(SensitiveDataRedactor.redact(parsed), default=str)
            return text_ if len(text_) <= max_chars else text_[:max_chars] + "...[truncated]"
    return {"content_type": content_type, "size": len(body)}


async def _replay(chunks: list[bytes]):
    for chunk in chunks:
        yield chunk


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """
    Fire-and-forget request auditing.

    Never crashes the request flow: anything that goes wrong while building
    the entry is logged at debug and the response is returned unchanged.
    """

    def __init__(self, app, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled
        self.settings = get_tenancy_settings()

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if not self.enabled or path in self.settings.audit_skip_paths:
            return await call_next(request)

        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        request_body = b""
        if request.method not in ("GET", "HEAD", "OPTIONS"):
            request_body = await request.body()

        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - started) * 1000)

        if not is_significant(
            request.method,
            response.status_code,
            path,
            self.settings.significant_path_markers,
        ):
            return response

        try:
            response_body = b""
            if response.status_code >= 400:
                chunks = [chunk async for chunk in response.body_iterator]
                response.body_iterator = _replay(chunks)
                response_body = b"".join(chunks)

            event = self._build_event(
                request,
                response,
                duration_ms=duration_ms,
                request_body=request_body,
                response_body=response_body,
                correlation_id=correlation_id,
            )
            schedule_after_response(response, [event])
        except Exception:
            logger.debug("Audit middleware failed to schedule entry", extra={"path": path}, exc_info=True)

        return response

    def _build_event(
        self,
        request: Request,
        response: Response,
        duration_ms: int,
        request_body: bytes,
        response_body: bytes,
        correlation_id: str,
    ) -> AuditEvent:
        status_code = response.status_code
        context = getattr(request.state, "tenant_context", None)
        ip_address, user_agent = extract_client_info(request)
        max_chars = self.settings.max_body_summary_chars

        error_code = None
        if response_body:
            try:
                error_code = json.loads(response_body).get("code")
            except (ValueError, AttributeError):
                error_code = None

        return AuditEvent(
            action=f"{request.method}_{request.url.path}",
            level=AuditLevel.ERROR if status_code >= 400 else AuditLevel.INFO,
            user_id=context.user_id if context else None,
            school_id=context.school_id if context else None,
            ip_address=ip_address,
            user_agent=user_agent,
            message=f"{request.method} {request.url.path} - {status_code} ({duration_ms}ms)",
            metadata={
                "method": request.method,
                "url": str(request.url.path),
                "query": str(request.url.query) or None,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "request_body": summarize_body(
                    request_body, request.headers.get("content-type"), max_chars
                ),
                "response_success": status_code < 400,
                "response_body": summarize_body(
                    response_body, response.headers.get("content-type"), max_chars
                ),
                "error_code": error_code,
                "correlation_id": correlation_id,
            },
        )

