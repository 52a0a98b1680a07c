"""
Application-layer tenant filtering.

Every read, create, update and delete against a tenant-scoped entity goes
through one of the four seams below. Each takes the request's TenantContext
as an explicit argument and returns a new filter or value mapping; nothing
here holds per-request state.

Every refusal is written to the audit trail as a cross_tenant_attempt
before the error is raised. Pass the request to have the entry written
after the response instead of inline.

    filtered_read(context, raw_filter)    -> effective filter
    stamped_create(context, values)       -> values with school_id
    guarded_update(context, values)       -> values, or TenantReassignmentForbiddenError
    filtered_delete(context, raw_filter)  -> effective filter

Entities are classified by two fixed allow-lists. An entity in neither list
is rejected so that a newly added table cannot bypass filtering by omission.
"""

import logging
from typing import Any, Mapping, Optional, Union

from fastapi import Request

from edutenant.platform.audit import audit_cross_tenant_access
from edutenant.platform.errors import (
    CrossTenantAccessDeniedError,
    TenantReassignmentForbiddenError,
    UnscopedEntityError,
)
from edutenant.platform.tenant_context import TenantContext

logger = logging.getLogger(__name__)

TENANT_COLUMN = "school_id"

TENANT_SCOPED_ENTITIES = frozenset({
    "User",
    "Student",
    "Teacher",
    "Parent",
    "SchoolClass",
    "Attendance",
    "Homework",
    "HomeworkSubmission",
    "Event",
    "Complaint",
    "Fee",
    "StudentFee",
    "StaffAttendance",
})

# Never filtered: tenant registry, plan catalog, payment ledger, public inquiries
GLOBAL_ENTITIES = frozenset({
    "School",
    "SubscriptionPlan",
    "Payment",
    "Inquiry",
})


def _entity_name(entity: Union[str, type]) -> str:
    return entity if isinstance(entity, str) else entity.__name__


def is_tenant_scoped(entity: Union[str, type]) -> bool:
    """
    Classify an entity by name or model class.

    Raises UnscopedEntityError for entities in neither allow-list.
    """
    name = _entity_name(entity)
    if name in TENANT_SCOPED_ENTITIES:
        return True
    if name in GLOBAL_ENTITIES:
        return False
    raise UnscopedEntityError(f"Entity {name} is not registered as tenant-scoped or global")


def _applies(context: TenantContext, entity: Optional[Union[str, type]]) -> bool:
    if entity is not None and not is_tenant_scoped(entity):
        return False
    return context.school_id is not None


def filtered_read(
    context: TenantContext,
    raw_filter: Optional[Mapping[str, Any]] = None,
    entity: Optional[Union[str, type]] = None,
    request: Optional[Request] = None,
) -> dict[str, Any]:
    """
    Return the filter to use for a read.

    Adds school_id = context.school_id unless the context is super-admin or
    the entity is global. A caller filter already naming the caller's own
    school is kept; one naming another school is refused.
    """
    effective = dict(raw_filter or {})
    if not _applies(context, entity):
        return effective

    requested = effective.get(TENANT_COLUMN)
    if requested is not None and str(requested) != context.school_id:
        logger.warning(
            "Filter names another school",
            extra={
                "school_id": context.school_id,
                "requested_school_id": str(requested),
                "user_id": context.user_id,
                "entity": _entity_name(entity) if entity is not None else None,
            },
        )
        audit_cross_tenant_access(context, str(requested), request=request)
        raise CrossTenantAccessDeniedError()

    effective[TENANT_COLUMN] = context.school_id
    return effective


def filtered_delete(
    context: TenantContext,
    raw_filter: Optional[Mapping[str, Any]] = None,
    entity: Optional[Union[str, type]] = None,
    request: Optional[Request] = None,
) -> dict[str, Any]:
    """Same filter injection as filtered_read, applied before a delete."""
    return filtered_read(context, raw_filter, entity=entity, request=request)


def stamped_create(
    context: TenantContext,
    values: Mapping[str, Any],
    entity: Optional[Union[str, type]] = None,
    request: Optional[Request] = None,
) -> dict[str, Any]:
    """
    Return create values carrying the context's school_id.

    An unset school_id is filled from the context. Super-admin creates
    without an explicit school_id are left untouched for upstream validation.
    """
    stamped = dict(values)
    if not _applies(context, entity):
        return stamped

    supplied = stamped.get(TENANT_COLUMN)
    if supplied is None:
        stamped[TENANT_COLUMN] = context.school_id
    elif str(supplied) != context.school_id:
        logger.warning(
            "Create targets another school",
            extra={
                "school_id": context.school_id,
                "requested_school_id": str(supplied),
                "user_id": context.user_id,
            },
        )
        audit_cross_tenant_access(context, str(supplied), request=request)
        raise CrossTenantAccessDeniedError()
    return stamped


def guarded_update(
    context: TenantContext,
    values: Mapping[str, Any],
    entity: Optional[Union[str, type]] = None,
    request: Optional[Request] = None,
) -> dict[str, Any]:
    """
    Return update values safe to apply.

    A non-super-admin payload that would move the row to another school is
    rejected with TenantReassignmentForbiddenError. A payload repeating the
    caller's own school is accepted with the key dropped.
    """
    guarded = dict(values)
    if entity is not None and not is_tenant_scoped(entity):
        return guarded
    if context.is_super_admin or TENANT_COLUMN not in guarded:
        return guarded

    if str(guarded[TENANT_COLUMN]) != context.school_id:
        logger.warning(
            "Attempt to change school assignment",
            extra={
                "school_id": context.school_id,
                "requested_school_id": str(guarded[TENANT_COLUMN]),
                "user_id": context.user_id,
                "role": context.role.value,
            },
        )
        audit_cross_tenant_access(context, str(guarded[TENANT_COLUMN]), request=request)
        raise TenantReassignmentForbiddenError()

    guarded.pop(TENANT_COLUMN)
    return guarded
