"""
Fee records and the payment ledger.

Fee and StudentFee are tenant-scoped. Payment is a global ledger that the
query interceptor never filters.
"""

from sqlalchemy import Column, String, Numeric, Date, ForeignKey

from edutenant.db_base import Base
from edutenant.models.base import GUID, TimestampMixin, SchoolScopedMixin, generate_uuid


class Fee(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "fees"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    due_date = Column(Date, nullable=True)


class StudentFee(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "student_fees"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    fee_id = Column(GUID(), ForeignKey("fees.id"), nullable=False)
    student_id = Column(GUID(), ForeignKey("students.id"), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")


class Payment(Base, TimestampMixin):
    """Subscription payments collected from schools (global ledger)."""

    __tablename__ = "payments"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    school_id = Column(GUID(), ForeignKey("schools.id"), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default="pending")
