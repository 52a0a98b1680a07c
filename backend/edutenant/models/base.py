"""
Base mixins for database models.

Provides common functionality:
- GUID: UUID column, native on PostgreSQL, CHAR(36) elsewhere
- TimestampMixin: created_at, updated_at timestamps
- SchoolScopedMixin: school_id column for tenant isolation
- generate_uuid: UUID generation for primary keys
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, func, TypeDecorator
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import declared_attr
from sqlalchemy.types import CHAR


class GUID(TypeDecorator):
    """
    Platform-independent GUID type.

    Uses the native uuid type on PostgreSQL so row-level security policies
    can compare school_id against get_current_school_id() directly. Other
    dialects store CHAR(36). Values are always surfaced as strings.
    """
    impl = CHAR(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=False))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return str(value)


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Timestamp when record was last updated"
    )


class SchoolScopedMixin:
    """
    Mixin that adds the school_id tenant column.

    SECURITY: school_id is written by the query interceptor from the
    request's TenantContext. Never copy it from client input.
    """

    @declared_attr
    def school_id(cls):
        return Column(
            GUID(),
            ForeignKey("schools.id"),
            nullable=False,
            index=True,
            comment="Owning school (tenant). Never changes after insert."
        )
