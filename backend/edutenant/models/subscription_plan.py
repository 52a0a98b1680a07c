"""
Subscription plan catalog.

Global table. Each plan carries a feature map (feature key -> enabled)
that the feature gate intersects with the school's subscription status.
"""

import enum

from sqlalchemy import Column, String, Numeric, Boolean, JSON
from sqlalchemy.dialects.postgresql import JSONB

from edutenant.db_base import Base
from edutenant.models.base import GUID, TimestampMixin, generate_uuid

JSONType = JSON().with_variant(JSONB(), "postgresql")


class PlanType(str, enum.Enum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class SubscriptionPlan(Base, TimestampMixin):
    """A purchasable plan and the features it enables."""

    __tablename__ = "subscription_plans"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False, unique=True)
    plan_type = Column(String(20), nullable=False, default=PlanType.BASIC.value)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    features = Column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Feature key -> enabled flag, e.g. {\"attendance\": true}"
    )

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(name={self.name}, plan_type={self.plan_type})>"
