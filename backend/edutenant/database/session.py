"""
Engine and session factories.

One engine per process. PostgreSQL connections are pooled and shared by
unrelated requests, so every connection returned to the pool has its
tenant variables (app.current_school_id, app.user_role,
app.current_user_id) reset before another request can draw it. Requests
set them again through edutenant.platform.tenant_context.get_tenant_db_session.

SQLite is accepted for local runs and tests; it has no row-level security
and relies on the application-layer filter alone.

Usage:
    from edutenant.database.session import get_db_session

    @router.get("/plans")
    async def list_plans(db: Session = Depends(get_db_session)):
        return db.query(SubscriptionPlan).all()
"""

import os
import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from fastapi import status

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None

TENANT_SESSION_VARIABLES = (
    "app.current_school_id",
    "app.user_role",
    "app.current_user_id",
)


def _get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    # SQLAlchemy only knows the postgresql:// scheme
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    return database_url


def is_database_configured() -> bool:
    return bool(os.getenv("DATABASE_URL"))


def engine_options(database_url: str) -> dict[str, Any]:
    """Pool settings for the URL's backend."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            # A single shared connection, or each session sees an empty database
            options["poolclass"] = StaticPool
        return options

    return {
        "poolclass": QueuePool,
        "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }


def install_tenant_reset(engine: Engine) -> None:
    """
    Clear tenant variables whenever a PostgreSQL connection is returned to the pool.

    No-op for other dialects.
    """
    if engine.dialect.name != "postgresql":
        return

    reset_sql = "; ".join(f"RESET {name}" for name in TENANT_SESSION_VARIABLES)

    @event.listens_for(engine, "checkin")
    def _reset_tenant_variables(dbapi_connection, connection_record):
        if dbapi_connection is None:
            return
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute(reset_sql)
        finally:
            cursor.close()
        dbapi_connection.commit()


def get_engine() -> Engine:
    """Create the process-wide engine on first use."""
    global _engine
    if _engine is None:
        try:
            database_url = _get_database_url()
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise

        _engine = create_engine(database_url, **engine_options(database_url))
        install_tenant_reset(_engine)
        logger.info(
            "Database engine created",
            extra={"dialect": _engine.dialect.name},
        )
    return _engine


def get_session_factory() -> sessionmaker:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
        )
    return _SessionLocal


async def get_db_session() -> Generator[Session, None, None]:
    """
    FastAPI dependency for sessions that touch only global tables.

    Raises a 503 DATABASE_NOT_CONFIGURED AppError if the database is not
    configured. Routes reading tenant-scoped tables must use
    get_tenant_db_session instead.
    """
    # edutenant.platform imports this module
    from edutenant.platform.errors import AppError

    try:
        SessionLocal = get_session_factory()
    except ValueError:
        raise AppError(
            "Database not configured",
            code="DATABASE_NOT_CONFIGURED",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_db_session_sync() -> Generator[Session, None, None]:
    """
    Session generator for code running outside a request (audit writes,
    startup checks).

        for session in get_db_session_sync():
            ...
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}")

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
