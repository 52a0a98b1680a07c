"""baseline_schema

Revision ID: a1c4e2d9b7f0
Revises: 
Create Date: 2026-10-17 09:12:41.118204

"""
from typing import Sequence, Union

from alembic import op

from edutenant.db_base import Base
import edutenant.models  # noqa: F401 - required to register all model metadata
import edutenant.platform.audit  # noqa: F401 - tenant_audit_logs


# revision identifiers, used by Alembic.
revision: str = 'a1c4e2d9b7f0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
