"""
Database models.

Global models (tenant registry, plan catalog, payment ledger, inquiries)
carry no tenant filter. Tenant-scoped models inherit SchoolScopedMixin.
"""

from edutenant.models.base import GUID, TimestampMixin, SchoolScopedMixin, generate_uuid
from edutenant.models.subscription_plan import SubscriptionPlan, PlanType
from edutenant.models.school import School, SubscriptionStatus, ENTITLED_SUBSCRIPTION_STATUSES
from edutenant.models.user import User, Teacher, Student, Parent
from edutenant.models.academics import (
    SchoolClass,
    Attendance,
    StaffAttendance,
    Homework,
    HomeworkSubmission,
    Event,
    Complaint,
)
from edutenant.models.finance import Fee, StudentFee, Payment
from edutenant.models.inquiry import Inquiry

__all__ = [
    "GUID",
    "TimestampMixin",
    "SchoolScopedMixin",
    "generate_uuid",
    "SubscriptionPlan",
    "PlanType",
    "School",
    "SubscriptionStatus",
    "ENTITLED_SUBSCRIPTION_STATUSES",
    "User",
    "Teacher",
    "Student",
    "Parent",
    "SchoolClass",
    "Attendance",
    "StaffAttendance",
    "Homework",
    "HomeworkSubmission",
    "Event",
    "Complaint",
    "Fee",
    "StudentFee",
    "Payment",
    "Inquiry",
]
