"""
Row-level security provisioning tests.

The DDL ordering tests run everywhere. The isolation and trigger tests
require PostgreSQL (RLS is not supported in SQLite) and are skipped unless
DATABASE_URL points at a reachable PostgreSQL database whose user may create
roles.
"""

import os
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError

from edutenant.database.rls import (
    TENANT_SCOPED_TABLES,
    downgrade_statements,
    install_row_level_security,
    is_row_level_security_installed,
    policy_name,
    remove_row_level_security,
    trigger_name,
    upgrade_statements,
)
from edutenant.platform.query_interceptor import TENANT_SCOPED_ENTITIES

RESTRICTED_ROLE = "edutenant_rls_app"


def _get_postgres_url():
    """Get PostgreSQL URL for testing, or None if not available."""
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        return None
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql"):
        return database_url
    return None


def _is_postgres_available() -> bool:
    url = _get_postgres_url()
    if not url:
        return False
    try:
        engine = create_engine(url, pool_pre_ping=True)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        engine.dispose()
        return True
    except DBAPIError:
        return False


# Evaluated at collection time, before the autouse fixtures clear DATABASE_URL
POSTGRES_AVAILABLE = _is_postgres_available()
POSTGRES_URL = _get_postgres_url()


class TestStatements:

    def test_functions_created_before_policies(self):
        statements = upgrade_statements(["students"])
        first_policy = next(i for i, s in enumerate(statements) if "CREATE POLICY" in s)
        for name in ("set_school_context", "get_current_school_id", "is_super_admin", "audit_tenant_access"):
            created = next(i for i, s in enumerate(statements) if f"FUNCTION {name}(" in s)
            assert created < first_policy

    def test_every_table_gets_policy_and_trigger(self):
        statements = "\n".join(upgrade_statements())
        for table in TENANT_SCOPED_TABLES:
            assert f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY" in statements
            assert f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY" in statements
            assert f"CREATE POLICY {policy_name(table)} ON {table}" in statements
            assert f"CREATE TRIGGER {trigger_name(table)}" in statements

    def test_downgrade_order_is_trigger_policy_disable(self):
        statements = downgrade_statements(["students"])
        trigger = statements.index(f"DROP TRIGGER IF EXISTS {trigger_name('students')} ON students")
        policy = statements.index(f"DROP POLICY IF EXISTS {policy_name('students')} ON students")
        disable = statements.index("ALTER TABLE students DISABLE ROW LEVEL SECURITY")
        assert trigger < policy < disable
        # Functions go last, after every table released them
        assert statements[-1].startswith("DROP FUNCTION")

    def test_table_list_matches_interceptor(self):
        assert len(TENANT_SCOPED_TABLES) == len(TENANT_SCOPED_ENTITIES)

    def test_sqlite_is_rejected(self, db_engine):
        with db_engine.connect() as connection:
            with pytest.raises(RuntimeError):
                install_row_level_security(connection)
            assert is_row_level_security_installed(connection) is False


# =============================================================================
# PostgreSQL
# =============================================================================

@pytest.fixture(scope="module")
def pg():
    if not POSTGRES_AVAILABLE:
        pytest.skip("PostgreSQL required for RLS tests. Set DATABASE_URL to PostgreSQL.")

    from edutenant.db_base import Base
    from edutenant import models  # noqa: F401
    from edutenant.platform import audit  # noqa: F401

    engine = create_engine(POSTGRES_URL, pool_pre_ping=True)
    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        install_row_level_security(conn)
        try:
            with conn.begin_nested():
                conn.execute(text(f"DROP ROLE IF EXISTS {RESTRICTED_ROLE}"))
                conn.execute(text(f"CREATE ROLE {RESTRICTED_ROLE} NOLOGIN"))
                conn.execute(text(
                    f"GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA public TO {RESTRICTED_ROLE}"
                ))
            restricted_role = True
        except DBAPIError:
            restricted_role = False

    yield SimpleNamespace(engine=engine, restricted_role=restricted_role)

    with engine.begin() as conn:
        remove_row_level_security(conn)
        if restricted_role:
            conn.execute(text(f"DROP OWNED BY {RESTRICTED_ROLE}"))
            conn.execute(text(f"DROP ROLE IF EXISTS {RESTRICTED_ROLE}"))
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def two_schools(pg):
    """Two schools with one student each, inserted without tenant context."""
    school_a, school_b = str(uuid.uuid4()), str(uuid.uuid4())
    with pg.engine.begin() as conn:
        for school_id in (school_a, school_b):
            conn.execute(
                text(
                    "INSERT INTO schools (id, name, code, is_active, subscription_status, "
                    "max_students, max_teachers) "
                    "VALUES (:id, :name, :code, true, 'active', 100, 10)"
                ),
                {"id": school_id, "name": f"School {school_id[:8]}", "code": school_id[:12]},
            )
            conn.execute(
                text("INSERT INTO students (id, school_id, full_name) VALUES (:id, :school, :name)"),
                {"id": str(uuid.uuid4()), "school": school_id, "name": f"Student of {school_id[:8]}"},
            )
    yield school_a, school_b
    with pg.engine.begin() as conn:
        conn.execute(text("DELETE FROM students WHERE school_id IN (:a, :b)"), {"a": school_a, "b": school_b})
        conn.execute(text("DELETE FROM tenant_audit_logs"))
        conn.execute(text("DELETE FROM schools WHERE id IN (:a, :b)"), {"a": school_a, "b": school_b})


def _set_context(conn, school_id, role):
    conn.execute(
        text("SELECT set_school_context(CAST(:school_id AS uuid), :role)"),
        {"school_id": school_id, "role": role},
    )


@pytest.mark.postgres
@pytest.mark.security
class TestRowLevelSecurity:

    def test_functions_are_installed(self, pg):
        with pg.engine.connect() as conn:
            assert is_row_level_security_installed(conn) is True

    def test_database_filters_even_without_application_filter(self, pg, two_schools):
        if not pg.restricted_role:
            pytest.skip("Database user cannot create roles")
        school_a, _ = two_schools
        with pg.engine.connect() as conn:
            trans = conn.begin()
            _set_context(conn, school_a, "teacher")
            conn.execute(text(f"SET LOCAL ROLE {RESTRICTED_ROLE}"))
            schools = {row[0] for row in conn.execute(text("SELECT school_id::text FROM students"))}
            trans.rollback()
        assert schools == {school_a}

    def test_insert_for_other_school_is_rejected(self, pg, two_schools):
        if not pg.restricted_role:
            pytest.skip("Database user cannot create roles")
        school_a, school_b = two_schools
        with pg.engine.connect() as conn:
            trans = conn.begin()
            _set_context(conn, school_a, "teacher")
            conn.execute(text(f"SET LOCAL ROLE {RESTRICTED_ROLE}"))
            with pytest.raises(DBAPIError):
                conn.execute(
                    text("INSERT INTO students (id, school_id, full_name) VALUES (:id, :school, 'Mallory')"),
                    {"id": str(uuid.uuid4()), "school": school_b},
                )
            trans.rollback()

    def test_super_admin_sees_every_school(self, pg, two_schools):
        if not pg.restricted_role:
            pytest.skip("Database user cannot create roles")
        with pg.engine.connect() as conn:
            trans = conn.begin()
            _set_context(conn, None, "super_admin")
            conn.execute(text(f"SET LOCAL ROLE {RESTRICTED_ROLE}"))
            schools = {row[0] for row in conn.execute(text("SELECT school_id::text FROM students"))}
            trans.rollback()
        assert set(two_schools) <= schools

    def test_trigger_records_every_mutation(self, pg, two_schools):
        school_a, _ = two_schools
        user_id = str(uuid.uuid4())
        student_id = str(uuid.uuid4())
        with pg.engine.begin() as conn:
            _set_context(conn, school_a, "school_admin")
            conn.execute(text("SELECT set_config('app.current_user_id', :u, false)"), {"u": user_id})
            conn.execute(
                text("INSERT INTO students (id, school_id, full_name) VALUES (:id, :school, 'Ada')"),
                {"id": student_id, "school": school_a},
            )
            conn.execute(text("UPDATE students SET full_name = 'Ada L.' WHERE id = :id"), {"id": student_id})
            conn.execute(text("DELETE FROM students WHERE id = :id"), {"id": student_id})
            _set_context(conn, None, None)

        with pg.engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT action, user_id::text, school_id::text, old_values, new_values "
                    "FROM tenant_audit_logs WHERE table_name = 'students' AND record_id = :id"
                ),
                {"id": student_id},
            ).all()

        by_action = {row.action: row for row in rows}
        assert len(rows) == 3
        assert set(by_action) == {"INSERT", "UPDATE", "DELETE"}
        assert all(row.user_id == user_id and row.school_id == school_a for row in rows)
        insert, update, delete = by_action["INSERT"], by_action["UPDATE"], by_action["DELETE"]
        assert insert.old_values is None and insert.new_values["full_name"] == "Ada"
        assert update.old_values["full_name"] == "Ada" and update.new_values["full_name"] == "Ada L."
        assert delete.old_values["full_name"] == "Ada L." and delete.new_values is None
