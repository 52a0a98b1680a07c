"""
Subscription feature gate.

A tenant's FeatureSet is its plan's feature map combined with the school's
subscription status. It is resolved from the database on every request and
never cached: a plan or status change must take effect immediately.

A request is authorized only when the permission matrix allows the
(role, feature, action) AND, for gated features, the FeatureSet has the
feature with status active or trial. The gate can only narrow what the
matrix grants.

Usage:
    feature_set = resolve_feature_set(db, context.school_id)
    authorize(context, Feature.HOMEWORK, Action.CREATE, feature_set)
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

from fastapi import Request, status
from sqlalchemy.orm import Session

from edutenant.constants.permissions import (
    Action,
    Feature,
    GATED_FEATURES,
    PlanFeature,
    Role,
)
from edutenant.models.school import School, SubscriptionStatus, ENTITLED_SUBSCRIPTION_STATUSES
from edutenant.models.subscription_plan import SubscriptionPlan
from edutenant.models.user import Student, Teacher
from edutenant.platform.audit import audit_subscription_event
from edutenant.platform.errors import (
    FeatureUnavailableError,
    LimitExceededError,
    MissingTenantContextError,
    PermissionDeniedError,
)
from edutenant.platform.rbac import check_permission_or_raise
from edutenant.platform.tenant_context import TenantContext
from edutenant.repositories.base_repo import TenantScopedRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureSet:
    """A school's effective entitlements for the current request."""
    school_id: str
    subscription_status: str
    plan_name: Optional[str] = None
    features: Mapping[str, bool] = field(default_factory=dict)
    max_students: int = 100
    max_teachers: int = 10

    @property
    def is_entitled(self) -> bool:
        return self.subscription_status in ENTITLED_SUBSCRIPTION_STATUSES

    @property
    def available(self) -> list[str]:
        return sorted(name for name, enabled in self.features.items() if enabled is True)


def has_feature(features: Mapping[str, Any], feature_name: Union[PlanFeature, str]) -> bool:
    """Only an explicit True enables a feature; missing keys are disabled."""
    name = feature_name.value if isinstance(feature_name, PlanFeature) else feature_name
    return features.get(name) is True


def resolve_feature_set(db: Session, school_id: Optional[str]) -> FeatureSet:
    """
    Load the school's subscription and plan.

    Raises:
        FeatureUnavailableError: school does not exist (404, SCHOOL_NOT_FOUND)
        MissingTenantContextError: no school_id given
    """
    if not school_id:
        raise MissingTenantContextError(
            "School context is required to check feature access",
            code="SCHOOL_CONTEXT_MISSING",
        )

    school = db.query(School).filter(School.id == school_id).first()
    if school is None:
        raise FeatureUnavailableError(
            "School not found",
            code="SCHOOL_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
        )

    plan = None
    if school.subscription_plan_id:
        plan = (
            db.query(SubscriptionPlan)
            .filter(SubscriptionPlan.id == school.subscription_plan_id)
            .first()
        )

    return FeatureSet(
        school_id=school.id,
        subscription_status=school.subscription_status,
        plan_name=plan.name if plan else None,
        features=MappingProxyType(dict(plan.features or {})) if plan else MappingProxyType({}),
        max_students=school.max_students,
        max_teachers=school.max_teachers,
    )


def _require_entitled(feature_set: FeatureSet) -> None:
    if feature_set.is_entitled:
        return
    logger.info(
        "Subscription inactive",
        extra={"school_id": feature_set.school_id, "status": feature_set.subscription_status},
    )
    raise FeatureUnavailableError(
        "School subscription is not active",
        code="SUBSCRIPTION_INACTIVE",
        details={"subscriptionStatus": feature_set.subscription_status},
    )


def check_feature_or_raise(feature_set: FeatureSet, feature: Union[PlanFeature, str]) -> None:
    """Require an entitled subscription whose plan enables the feature."""
    _require_entitled(feature_set)

    name = feature.value if isinstance(feature, PlanFeature) else feature
    if has_feature(feature_set.features, name):
        return

    logger.info(
        "Feature not available on plan",
        extra={"school_id": feature_set.school_id, "feature": name, "plan": feature_set.plan_name},
    )
    raise FeatureUnavailableError(
        f"Feature '{name}' is not available in your current plan",
        code="FEATURE_NOT_AVAILABLE",
        details={
            "feature": name,
            "currentPlan": feature_set.plan_name,
            "availableFeatures": feature_set.available,
        },
    )


def check_features_or_raise(
    feature_set: FeatureSet,
    features: Iterable[Union[PlanFeature, str]],
) -> None:
    """All-or-nothing variant reporting every missing feature."""
    _require_entitled(feature_set)

    names = [f.value if isinstance(f, PlanFeature) else f for f in features]
    missing = [name for name in names if not has_feature(feature_set.features, name)]
    if not missing:
        return

    raise FeatureUnavailableError(
        "Some required features are not available in your current plan",
        code="FEATURES_NOT_AVAILABLE",
        details={
            "missingFeatures": missing,
            "currentPlan": feature_set.plan_name,
        },
    )


def authorize(
    context: TenantContext,
    feature: Feature,
    action: Action,
    feature_set: Optional[FeatureSet],
) -> None:
    """
    Full authorization for one (feature, action).

    Matrix first (PermissionDeniedError), then the gate for gated features
    (FeatureUnavailableError). Super-admins acting without a school skip the
    gate since no subscription applies.
    """
    check_permission_or_raise(context, feature, action)

    plan_feature = GATED_FEATURES.get(feature)
    if plan_feature is None:
        return
    if feature_set is None:
        if context.role == Role.SUPER_ADMIN:
            return
        raise MissingTenantContextError(
            "School context is required to check feature access",
            code="SCHOOL_CONTEXT_MISSING",
        )
    check_feature_or_raise(feature_set, plan_feature)


def get_school_features(db: Session, school_id: str) -> dict[str, Any]:
    """Feature summary for a school (available, unavailable and limits)."""
    feature_set = resolve_feature_set(db, school_id)
    known = {f.value for f in PlanFeature}
    return {
        "school_id": feature_set.school_id,
        "plan": feature_set.plan_name,
        "subscription_status": feature_set.subscription_status,
        "is_active": feature_set.is_entitled,
        "available": feature_set.available if feature_set.is_entitled else [],
        "unavailable": sorted(known - set(feature_set.available))
        if feature_set.is_entitled
        else sorted(known),
        "limits": {
            "max_students": feature_set.max_students,
            "max_teachers": feature_set.max_teachers,
        },
    }


_LIMITED_ENTITIES = {
    Student: ("max_students", "STUDENT_LIMIT_EXCEEDED", "Student"),
    Teacher: ("max_teachers", "TEACHER_LIMIT_EXCEEDED", "Teacher"),
}


def enforce_school_limits(db: Session, context: TenantContext, model: type) -> None:
    """
    Check subscription status and plan limits before creating a student or teacher.

    Counts only the caller's school.
    """
    feature_set = resolve_feature_set(db, context.school_id)
    _require_entitled(feature_set)

    limit_spec = _LIMITED_ENTITIES.get(model)
    if limit_spec is None:
        return

    limit_attr, code, label = limit_spec
    max_allowed = getattr(feature_set, limit_attr)
    current = TenantScopedRepository(db, context, model).count()
    if current < max_allowed:
        return

    logger.info(
        "School limit reached",
        extra={"school_id": context.school_id, "entity": label, "limit": max_allowed},
    )
    raise LimitExceededError(
        f"{label} limit reached for your plan",
        code=code,
        details={"currentCount": current, "maxAllowed": max_allowed},
    )


def change_subscription_status(
    db: Session,
    context: TenantContext,
    school_id: str,
    new_status: Union[SubscriptionStatus, str],
    request: Optional[Request] = None,
) -> School:
    """
    Move a school to another subscription state. Super-admin only.

    Takes effect on the school's next request since FeatureSets are never
    cached. Every change is recorded as a subscription_change audit entry.
    """
    if not context.is_super_admin:
        raise PermissionDeniedError("Insufficient permissions", code="INSUFFICIENT_ROLE")

    new_status = SubscriptionStatus(new_status)
    school = db.query(School).filter(School.id == school_id).first()
    if school is None:
        raise FeatureUnavailableError(
            "School not found",
            code="SCHOOL_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
        )

    old_status = school.subscription_status
    school.subscription_status = new_status.value
    db.commit()

    logger.info(
        "Subscription status changed",
        extra={"school_id": school_id, "from": old_status, "to": new_status.value},
    )
    audit_subscription_event(
        context,
        school_id,
        new_status.value,
        old_values={"subscription_status": old_status},
        new_values={"subscription_status": new_status.value},
        request=request,
    )
    return school
