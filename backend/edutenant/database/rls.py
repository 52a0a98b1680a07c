"""
Row-level security provisioning (PostgreSQL only).

Last line of defense behind the query interceptor: the database itself
refuses to return or accept another school's rows for a session whose
tenant variables are set.

Persisted surface (names and signatures are stable across migrations):
    set_school_context(school_uuid uuid, user_role text DEFAULT NULL)
    get_current_school_id() -> uuid      NULL when unset
    is_super_admin() -> boolean
    audit_tenant_access()                trigger function

Per table the state is either "disabled" or "enabled with policy and audit
trigger". Removal runs trigger -> policy -> disable, in that order.

NOTE: the isolation policy admits every row when no school is configured
(get_current_school_id() IS NULL). Maintenance sessions rely on this, but a
request that skipped set_school_context() is indistinguishable from one at
the policy level. Requests always go through get_tenant_db_session, which
sets the context first.
"""

import logging
from typing import Iterable, List

from sqlalchemy import text
from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)

# Mirrors edutenant.platform.query_interceptor.TENANT_SCOPED_ENTITIES
TENANT_SCOPED_TABLES = (
    "users",
    "students",
    "teachers",
    "parents",
    "classes",
    "attendance",
    "homework",
    "homework_submissions",
    "events",
    "complaints",
    "fees",
    "student_fees",
    "staff_attendance",
)

SET_SCHOOL_CONTEXT_SQL = """
CREATE OR REPLACE FUNCTION set_school_context(school_uuid uuid, user_role text DEFAULT NULL)
RETURNS void
LANGUAGE plpgsql
AS $$
BEGIN
    -- Session scope: the caller re-sets (and clears) these on every request
    PERFORM set_config('app.current_school_id', COALESCE(school_uuid::text, ''), false);
    PERFORM set_config('app.user_role', COALESCE(user_role, ''), false);
END;
$$
"""

GET_CURRENT_SCHOOL_ID_SQL = """
CREATE OR REPLACE FUNCTION get_current_school_id()
RETURNS uuid
LANGUAGE plpgsql
STABLE
AS $$
DECLARE
    configured text;
BEGIN
    configured := current_setting('app.current_school_id', true);
    IF configured IS NULL OR configured = '' THEN
        RETURN NULL;
    END IF;
    RETURN configured::uuid;
END;
$$
"""

IS_SUPER_ADMIN_SQL = """
CREATE OR REPLACE FUNCTION is_super_admin()
RETURNS boolean
LANGUAGE sql
STABLE
AS $$
    SELECT COALESCE(current_setting('app.user_role', true), '') = 'super_admin'
$$
"""

AUDIT_TENANT_ACCESS_SQL = """
CREATE OR REPLACE FUNCTION audit_tenant_access()
RETURNS trigger
LANGUAGE plpgsql
SECURITY DEFINER
SET search_path = public
AS $$
DECLARE
    actor text;
    actor_id uuid;
    row_school uuid;
    row_id text;
BEGIN
    actor := current_setting('app.current_user_id', true);
    IF actor ~* '^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$' THEN
        actor_id := actor::uuid;
    END IF;

    IF TG_OP = 'DELETE' THEN
        row_school := OLD.school_id;
        row_id := OLD.id::text;
    ELSE
        row_school := NEW.school_id;
        row_id := NEW.id::text;
    END IF;

    INSERT INTO tenant_audit_logs (
        id, user_id, school_id, action, table_name, record_id,
        old_values, new_values, level, message, metadata, created_at
    ) VALUES (
        gen_random_uuid(),
        actor_id,
        COALESCE(get_current_school_id(), row_school),
        TG_OP,
        TG_TABLE_NAME,
        row_id,
        CASE WHEN TG_OP IN ('UPDATE', 'DELETE') THEN to_jsonb(OLD) END,
        CASE WHEN TG_OP IN ('INSERT', 'UPDATE') THEN to_jsonb(NEW) END,
        'info',
        TG_OP || ' on ' || TG_TABLE_NAME,
        jsonb_build_object(
            'source', 'trigger',
            'role', NULLIF(current_setting('app.user_role', true), '')
        ),
        now()
    );

    IF TG_OP = 'DELETE' THEN
        RETURN OLD;
    END IF;
    RETURN NEW;
END;
$$
"""

_POLICY_PREDICATE = (
    "is_super_admin() = true "
    "OR school_id = get_current_school_id() "
    "OR get_current_school_id() IS NULL"
)


def policy_name(table: str) -> str:
    return f"{table}_school_isolation"


def trigger_name(table: str) -> str:
    return f"{table}_audit_trigger"


def upgrade_statements(tables: Iterable[str] = TENANT_SCOPED_TABLES) -> List[str]:
    """DDL that moves every table to enabled-with-policy-and-trigger."""
    statements = [
        SET_SCHOOL_CONTEXT_SQL,
        GET_CURRENT_SCHOOL_ID_SQL,
        IS_SUPER_ADMIN_SQL,
        AUDIT_TENANT_ACCESS_SQL,
    ]
    for table in tables:
        statements.extend([
            f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
            # Table owners bypass RLS unless forced
            f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
            f"DROP POLICY IF EXISTS {policy_name(table)} ON {table}",
            f"CREATE POLICY {policy_name(table)} ON {table} FOR ALL TO PUBLIC "
            f"USING ({_POLICY_PREDICATE}) WITH CHECK ({_POLICY_PREDICATE})",
            f"DROP TRIGGER IF EXISTS {trigger_name(table)} ON {table}",
            f"CREATE TRIGGER {trigger_name(table)} "
            f"AFTER INSERT OR UPDATE OR DELETE ON {table} "
            f"FOR EACH ROW EXECUTE FUNCTION audit_tenant_access()",
        ])
    return statements


def downgrade_statements(tables: Iterable[str] = TENANT_SCOPED_TABLES) -> List[str]:
    """Reverse of upgrade_statements: trigger, then policy, then RLS, then functions."""
    statements = []
    for table in tables:
        statements.extend([
            f"DROP TRIGGER IF EXISTS {trigger_name(table)} ON {table}",
            f"DROP POLICY IF EXISTS {policy_name(table)} ON {table}",
            f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY",
            f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY",
        ])
    statements.extend([
        "DROP FUNCTION IF EXISTS audit_tenant_access()",
        "DROP FUNCTION IF EXISTS is_super_admin()",
        "DROP FUNCTION IF EXISTS get_current_school_id()",
        "DROP FUNCTION IF EXISTS set_school_context(uuid, text)",
    ])
    return statements


def install_row_level_security(connection: Connection, tables: Iterable[str] = TENANT_SCOPED_TABLES) -> None:
    """Apply upgrade_statements on a PostgreSQL connection."""
    if connection.dialect.name != "postgresql":
        raise RuntimeError("Row-level security requires PostgreSQL")
    tables = tuple(tables)
    for statement in upgrade_statements(tables):
        connection.execute(text(statement))
    logger.info("Row-level security installed", extra={"tables": list(tables)})


def remove_row_level_security(connection: Connection, tables: Iterable[str] = TENANT_SCOPED_TABLES) -> None:
    if connection.dialect.name != "postgresql":
        raise RuntimeError("Row-level security requires PostgreSQL")
    tables = tuple(tables)
    for statement in downgrade_statements(tables):
        connection.execute(text(statement))
    logger.info("Row-level security removed", extra={"tables": list(tables)})


def is_row_level_security_installed(connection: Connection) -> bool:
    """True when set_school_context() exists in the connected database."""
    if connection.dialect.name != "postgresql":
        return False
    result = connection.execute(
        text("SELECT 1 FROM pg_proc WHERE proname = 'set_school_context'")
    ).first()
    return result is not None
