"""
School (tenant registry) model.

Schools are global rows: the query interceptor never filters this table
and row-level security is not enabled on it.
"""

import enum

from sqlalchemy import Column, String, Integer, Boolean, ForeignKey

from edutenant.db_base import Base
from edutenant.models.base import GUID, TimestampMixin, generate_uuid


class SubscriptionStatus(str, enum.Enum):
    """School subscription lifecycle states."""
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


# Only these states unlock gated features
ENTITLED_SUBSCRIPTION_STATUSES = frozenset({
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.ACTIVE.value,
})


class School(Base, TimestampMixin):
    """One tenant. Every tenant-scoped row points at exactly one school."""

    __tablename__ = "schools"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=False, unique=True, comment="Short school code")
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    subscription_status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.TRIAL.value,
        comment="trial, active, suspended or cancelled"
    )
    subscription_plan_id = Column(
        GUID(),
        ForeignKey("subscription_plans.id"),
        nullable=True,
        comment="Current plan in the subscription catalog"
    )
    max_students = Column(Integer, nullable=False, default=100)
    max_teachers = Column(Integer, nullable=False, default=10)

    @property
    def is_entitled(self) -> bool:
        return self.subscription_status in ENTITLED_SUBSCRIPTION_STATUSES

    def __repr__(self) -> str:
        return f"<School(id={self.id}, code={self.code}, status={self.subscription_status})>"
