"""Public inquiries submitted from the marketing site (global, unscoped)."""

from sqlalchemy import Column, String, Text

from edutenant.db_base import Base
from edutenant.models.base import GUID, TimestampMixin, generate_uuid


class Inquiry(Base, TimestampMixin):
    __tablename__ = "inquiries"

    id = Column(GUID(), primary_key=True, default=generate_uuid)
    school_name = Column(String(255), nullable=False)
    contact_email = Column(String(255), nullable=False)
    message = Column(Text, nullable=True)
