"""Database engine, sessions and row-level security provisioning."""

from edutenant.database.session import (
    get_engine,
    get_session_factory,
    get_db_session,
    get_db_session_sync,
    is_database_configured,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "get_db_session",
    "get_db_session_sync",
    "is_database_configured",
]
