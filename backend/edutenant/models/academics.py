"""
Classroom records: classes, attendance, homework, events, complaints.

All tables here are tenant-scoped. Only the columns the tenancy core and
its tests rely on are mapped.
"""

from sqlalchemy import Column, String, Date, Text, ForeignKey

from edutenant.db_base import Base
from edutenant.models.base import GUID, TimestampMixin, SchoolScopedMixin, generate_uuid


class SchoolClass(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "classes"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False)
    section = Column(String(20), nullable=True)
    teacher_id = Column(GUID(), ForeignKey("teachers.id"), nullable=True)


class Attendance(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "attendance"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    student_id = Column(GUID(), ForeignKey("students.id"), nullable=False)
    date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, comment="present, absent, late")


class StaffAttendance(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "staff_attendance"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    user_id = Column(GUID(), ForeignKey("users.id"), nullable=False)
    date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False)


class Homework(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "homework"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    class_id = Column(GUID(), ForeignKey("classes.id"), nullable=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    due_date = Column(Date, nullable=True)


class HomeworkSubmission(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "homework_submissions"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    homework_id = Column(GUID(), ForeignKey("homework.id"), nullable=False)
    student_id = Column(GUID(), ForeignKey("students.id"), nullable=False)
    content = Column(Text, nullable=True)


class Event(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "events"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    title = Column(String(255), nullable=False)
    starts_on = Column(Date, nullable=True)


class Complaint(Base, TimestampMixin, SchoolScopedMixin):
    __tablename__ = "complaints"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    student_id = Column(GUID(), ForeignKey("students.id"), nullable=True)
    subject = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="open")
