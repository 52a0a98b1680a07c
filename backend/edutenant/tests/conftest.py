"""
Root test configuration and fixtures.

Provides a SQLite in-memory database wired into edutenant.database.session,
so request-scoped sessions and audit writes both land in the test database.
Postgres-only suites (row-level security) bring their own engine.
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Generator, Optional

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

TEST_JWT_SECRET = "test-secret-do-not-use-in-production"


@pytest.fixture(autouse=True)
def _isolated_singletons(monkeypatch):
    """Fresh settings and alert manager per test; no ambient database."""
    from edutenant.config.tenancy_settings import reset_tenancy_settings
    from edutenant.monitoring.audit_alerts import reset_audit_alert_manager

    monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TENANCY_CONFIG_PATH", raising=False)
    reset_tenancy_settings()
    reset_audit_alert_manager()
    yield
    reset_tenancy_settings()
    reset_audit_alert_manager()


@pytest.fixture
def db_engine():
    """SQLite in-memory engine with every table created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from edutenant.db_base import Base
    from edutenant import models  # noqa: F401
    from edutenant.platform import audit  # noqa: F401 - Audit log model

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine, monkeypatch) -> sessionmaker:
    """Point the application's engine and session factory at the test database."""
    from edutenant.database import session as db_module

    factory = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setattr(db_module, "_engine", db_engine)
    monkeypatch.setattr(db_module, "_SessionLocal", factory)
    return factory


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Domain fixtures
# =============================================================================

@pytest.fixture
def make_plan(db_session):
    from edutenant.models import SubscriptionPlan

    def _make(name: str = "Standard", **features) -> SubscriptionPlan:
        plan = SubscriptionPlan(name=name, plan_type="standard", price=0, features=features)
        db_session.add(plan)
        db_session.commit()
        return plan
    return _make


@pytest.fixture
def make_school(db_session):
    from edutenant.models import School

    def _make(
        code: Optional[str] = None,
        status: str = "active",
        plan=None,
        **kwargs,
    ) -> School:
        code = code or f"SCH-{uuid.uuid4().hex[:6]}"
        school = School(
            name=f"School {code}",
            code=code,
            subscription_status=status,
            subscription_plan_id=plan.id if plan else None,
            **kwargs,
        )
        db_session.add(school)
        db_session.commit()
        return school
    return _make


@pytest.fixture
def school_a(make_school):
    return make_school(code="ALPHA")


@pytest.fixture
def school_b(make_school):
    return make_school(code="BETA")


@pytest.fixture
def make_context():
    from edutenant.constants.permissions import Role
    from edutenant.platform.tenant_context import TenantContext

    def _make(role: Role = Role.SCHOOL_ADMIN, school_id: Optional[str] = None, user_id: Optional[str] = None):
        return TenantContext(
            school_id=None if role == Role.SUPER_ADMIN else school_id,
            user_id=user_id or str(uuid.uuid4()),
            role=role,
        )
    return _make


@pytest.fixture
def make_token():
    """Factory for signed bearer tokens."""
    def _make(
        role: str = "school_admin",
        school_id: Optional[str] = None,
        user_id: Optional[str] = None,
        expires_in: int = 3600,
        secret: str = TEST_JWT_SECRET,
        **claims,
    ) -> str:
        payload = {
            "sub": user_id or str(uuid.uuid4()),
            "role": role,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            **claims,
        }
        if school_id is not None:
            payload["schoolId"] = school_id
        return jwt.encode(payload, secret, algorithm="HS256")
    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "security: mark test as security-focused")
    config.addinivalue_line("markers", "postgres: requires a PostgreSQL database")
