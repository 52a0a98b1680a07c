"""
People: user accounts and the role-specific profiles hanging off them.

All tables here are tenant-scoped.
"""

from sqlalchemy import Column, String, Boolean, ForeignKey

from edutenant.db_base import Base
from edutenant.models.base import GUID, TimestampMixin, SchoolScopedMixin, generate_uuid


class User(Base, TimestampMixin, SchoolScopedMixin):
    """
    Login account.

    super_admin accounts belong to no school, so school_id is nullable here
    and only here. Such rows are visible only to super_admin contexts.
    """

    __tablename__ = "users"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    school_id = Column(
        GUID(),
        ForeignKey("schools.id"),
        nullable=True,
        index=True,
        comment="Owning school (tenant). NULL only for super_admin accounts."
    )
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(255), nullable=False)
    role = Column(String(32), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class Teacher(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "teachers"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=True)
    employee_code = Column(String(50), nullable=True)
    subject = Column(String(100), nullable=True)


class Student(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "students"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=True)
    class_id = Column(GUID(), ForeignKey("classes.id"), nullable=True)
    admission_number = Column(String(50), nullable=True)
    full_name = Column(String(255), nullable=False)


class Parent(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "parents"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=True)
    student_id = Column(GUID(), ForeignKey("students.id"), nullable=True)
    phone = Column(String(30), nullable=True)
