"""tenant_row_level_security

Enables row-level security, the school isolation policy and the audit
trigger on every tenant-scoped table, plus the session context functions.

Revision ID: b7e3f91c0d25
Revises: a1c4e2d9b7f0
Create Date: 2026-10-17 09:40:03.552917

"""
from typing import Sequence, Union

from alembic import op

from edutenant.database.rls import downgrade_statements, upgrade_statements


# revision identifiers, used by Alembic.
revision: str = 'b7e3f91c0d25'
down_revision: Union[str, None] = 'a1c4e2d9b7f0'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    for statement in upgrade_statements():
        op.execute(statement)


def downgrade() -> None:
    if op.get_bind().dialect.name != "postgresql":
        return
    for statement in downgrade_statements():
        op.execute(statement)
