"""
End-to-end tests for the HTTP surface.

Runs the real application (middleware stack, exception handlers, routers)
against the SQLite test database.
"""

import uuid
from datetime import date
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from edutenant.models import Attendance, Student
from edutenant.platform.audit import AuditAction, TenantAuditLog
from main import create_app


@pytest.fixture
def client(session_factory):
    return TestClient(create_app())


@pytest.fixture
def plan(make_plan):
    return make_plan("Standard", attendance=True, reports=True, advancedReports=False)


@pytest.fixture
def schools(db_session, make_school, plan):
    school_a = make_school(code="ALPHA", plan=plan)
    school_b = make_school(code="BETA", plan=plan)
    for school, names in ((school_a, ("Ada", "Grace", "Linus")), (school_b, ("Alan",))):
        for name in names:
            student = Student(school_id=school.id, full_name=name)
            db_session.add(student)
            db_session.flush()
            db_session.add(Attendance(
                school_id=school.id,
                student_id=student.id,
                date=date(2024, 9, 2),
                status="present",
            ))
    db_session.commit()
    return school_a, school_b


@pytest.fixture
def as_role(make_token):
    def _headers(role: str, school=None, user_id=None) -> dict:
        token = make_token(role, school.id if school else None, user_id=user_id)
        return {"Authorization": f"Bearer {token}"}
    return _headers


def test_liveness(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestFeatures:

    def test_school_features(self, client, schools, as_role):
        school_a, _ = schools
        response = client.get("/api/features", headers=as_role("teacher", school_a))
        assert response.status_code == 200
        body = response.json()
        assert body["school_id"] == school_a.id
        assert body["available"] == ["attendance", "reports"]
        assert "advancedReports" in body["unavailable"]

    def test_role_permissions(self, client, schools, as_role):
        response = client.get("/api/features/permissions", headers=as_role("teacher", schools[0]))
        assert response.status_code == 200
        assert response.json()["role"] == "teacher"
        assert "fees" not in response.json()["permissions"]

    def test_super_admin_has_no_school_features(self, client, as_role):
        response = client.get("/api/features", headers=as_role("super_admin"))
        assert response.status_code == 400
        assert response.json()["code"] == "SCHOOL_CONTEXT_MISSING"

    def test_unconfigured_database_is_a_structured_503(self, as_role):
        client = TestClient(create_app())
        response = client.get("/api/features", headers=as_role("teacher", SimpleNamespace(id=str(uuid.uuid4()))))
        assert response.status_code == 503
        assert response.json() == {"error": "Database not configured", "code": "DATABASE_NOT_CONFIGURED"}


class TestReports:

    def test_catalog_is_filtered_for_teachers(self, client, schools, as_role):
        response = client.get("/api/reports", headers=as_role("teacher", schools[0]))
        assert response.status_code == 200
        categories = {r["category"] for r in response.json()["reports"]}
        assert "attendance" in categories
        assert categories.isdisjoint({"financial", "fees", "payments", "revenue", "payment_history"})

    def test_admin_sees_full_catalog(self, client, schools, as_role):
        response = client.get("/api/reports", headers=as_role("school_admin", schools[0]))
        assert response.json()["count"] == 12

    @pytest.mark.security
    def test_restricted_category(self, client, schools, as_role):
        response = client.get("/api/reports/financial", headers=as_role("teacher", schools[0]))
        assert response.status_code == 403
        assert response.json()["code"] == "REPORT_ACCESS_DENIED"

    def test_unknown_category(self, client, schools, as_role):
        response = client.get("/api/reports/payroll", headers=as_role("school_admin", schools[0]))
        assert response.status_code == 403
        assert response.json()["code"] == "REPORT_ACCESS_DENIED"

    @pytest.mark.security
    def test_report_counts_only_own_school(self, client, schools, as_role):
        school_a, _ = schools
        response = client.get("/api/reports/attendance", headers=as_role("teacher", school_a))
        assert response.status_code == 200
        assert response.json()["record_count"] == 3
        assert response.json()["school_id"] == school_a.id

    def test_advanced_category_needs_advanced_reports(self, client, schools, as_role):
        response = client.get("/api/reports/revenue", headers=as_role("school_admin", schools[0]))
        assert response.status_code == 403
        assert response.json()["code"] == "FEATURES_NOT_AVAILABLE"
        assert response.json()["missingFeatures"] == ["advancedReports"]

    def test_students_cannot_view_reports(self, client, schools, as_role):
        response = client.get("/api/reports", headers=as_role("student", schools[0]))
        assert response.status_code == 403
        assert response.json()["code"] == "STUDENT_PERMISSION_DENIED"

    def test_suspended_school(self, client, make_school, plan, as_role):
        school = make_school(status="suspended", plan=plan)
        response = client.get("/api/reports", headers=as_role("school_admin", school))
        assert response.status_code == 403
        assert response.json()["code"] == "SUBSCRIPTION_INACTIVE"


class TestMonitoring:

    def test_health(self, client, schools, as_role):
        response = client.get("/api/monitoring/health", headers=as_role("school_admin", schools[0]))
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "healthy"
        assert body["audit_table"] is True
        # SQLite has no row-level security
        assert body["row_level_security"] is False

    def test_audit_logs_require_super_admin(self, client, schools, as_role):
        response = client.get("/api/monitoring/audit-logs", headers=as_role("school_admin", schools[0]))
        assert response.status_code == 403
        assert response.json()["code"] == "INSUFFICIENT_ROLE"

    def test_audit_logs_are_paginated_and_capped(self, client, schools, as_role):
        response = client.get("/api/monitoring/audit-logs?limit=500", headers=as_role("super_admin"))
        assert response.status_code == 200
        assert response.json()["pagination"]["limit"] == 100

    def test_super_admin_suspends_a_school(self, client, schools, db_session, as_role):
        school_a, _ = schools
        response = client.put(
            f"/api/monitoring/schools/{school_a.id}/subscription",
            headers=as_role("super_admin"),
            json={"status": "suspended"},
        )
        assert response.status_code == 200
        assert response.json() == {"school_id": school_a.id, "subscription_status": "suspended"}

        response = client.get("/api/reports", headers=as_role("school_admin", school_a))
        assert response.status_code == 403
        assert response.json()["code"] == "SUBSCRIPTION_INACTIVE"

        entry = (
            db_session.query(TenantAuditLog)
            .filter(TenantAuditLog.action == AuditAction.SUBSCRIPTION_CHANGE.value)
            .one()
        )
        assert entry.school_id == school_a.id

    def test_subscription_change_requires_super_admin(self, client, schools, as_role):
        school_a, _ = schools
        response = client.put(
            f"/api/monitoring/schools/{school_a.id}/subscription",
            headers=as_role("school_admin", school_a),
            json={"status": "active"},
        )
        assert response.status_code == 403
        assert response.json()["code"] == "INSUFFICIENT_ROLE"

    def test_tenant_stats(self, client, schools, make_school, as_role):
        make_school(status="suspended")
        response = client.get("/api/monitoring/tenant-stats", headers=as_role("super_admin"))
        assert response.status_code == 200
        body = response.json()
        assert body["total_schools"] == 3
        assert body["by_subscription_status"] == {"active": 2, "suspended": 1}

    def test_own_school_metrics(self, client, schools, as_role):
        school_a, _ = schools
        response = client.get(
            f"/api/monitoring/school-metrics/{school_a.id}",
            headers=as_role("school_admin", school_a),
        )
        assert response.status_code == 200
        assert response.json()["counts"]["students"] == 3
        assert response.json()["counts"]["attendance"] == 3

    def test_super_admin_metrics_for_any_school(self, client, schools, as_role):
        _, school_b = schools
        response = client.get(f"/api/monitoring/school-metrics/{school_b.id}", headers=as_role("super_admin"))
        assert response.status_code == 200
        assert response.json()["counts"]["students"] == 1

    @pytest.mark.security
    def test_cross_tenant_metrics_are_refused_and_audited(self, client, schools, db_session, as_role):
        school_a, school_b = schools
        user_id = str(uuid.uuid4())
        response = client.get(
            f"/api/monitoring/school-metrics/{school_b.id}",
            headers=as_role("school_admin", school_a, user_id=user_id),
        )
        assert response.status_code == 403
        assert response.json()["code"] == "CROSS_TENANT_ACCESS_DENIED"

        attempts = (
            db_session.query(TenantAuditLog)
            .filter(TenantAuditLog.action == AuditAction.CROSS_TENANT_ATTEMPT.value)
            .all()
        )
        assert len(attempts) == 1
        assert attempts[0].level == "security"
        assert attempts[0].user_id == user_id
        assert attempts[0].school_id == school_a.id
        assert attempts[0].event_metadata["attempted_school_id"] == school_b.id
