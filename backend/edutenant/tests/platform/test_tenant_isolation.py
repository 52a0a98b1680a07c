"""
Tenant isolation through TenantScopedRepository.

CRITICAL: These tests verify that cross-tenant access is impossible at the
application layer, with no help from row-level security (SQLite backend):
- every row a non-super-admin reads carries its own school_id
- creates are stamped with the caller's school
- updates can never move a row to another school
- every refusal leaves one cross_tenant_attempt entry
"""

from unittest.mock import MagicMock

import pytest

from edutenant.constants.permissions import Role
from edutenant.models import Complaint, Event, School, Student, User
from edutenant.platform.audit import AuditAction, TenantAuditLog
from edutenant.platform.errors import (
    CrossTenantAccessDeniedError,
    TenantReassignmentForbiddenError,
    UnscopedEntityError,
)
from edutenant.repositories.base_repo import TenantScopedRepository


@pytest.fixture
def seeded(db_session, school_a, school_b):
    for name in ("Ada", "Grace", "Linus"):
        db_session.add(Student(school_id=school_a.id, full_name=name))
    for name in ("Alan", "Barbara"):
        db_session.add(Student(school_id=school_b.id, full_name=name))
    db_session.add(Event(school_id=school_a.id, title="Sports day"))
    db_session.add(Event(school_id=school_b.id, title="Science fair"))
    db_session.commit()
    return school_a, school_b


@pytest.fixture
def admin_a(make_context, school_a):
    return make_context(Role.SCHOOL_ADMIN, school_id=school_a.id)


@pytest.fixture
def teacher_b(make_context, school_b):
    return make_context(Role.TEACHER, school_id=school_b.id)


def _attempts(db_session) -> int:
    return (
        db_session.query(TenantAuditLog)
        .filter_by(action=AuditAction.CROSS_TENANT_ATTEMPT.value)
        .count()
    )


@pytest.mark.security
class TestIsolation:

    def test_list_returns_only_own_school(self, db_session, seeded, admin_a):
        school_a, _ = seeded
        students = TenantScopedRepository(db_session, admin_a, Student).list()
        assert sorted(s.full_name for s in students) == ["Ada", "Grace", "Linus"]
        assert all(s.school_id == school_a.id for s in students)

    @pytest.mark.parametrize("model", [Student, Event])
    def test_every_row_matches_context(self, db_session, seeded, teacher_b, model):
        rows = TenantScopedRepository(db_session, teacher_b, model).list()
        assert rows
        assert all(row.school_id == teacher_b.school_id for row in rows)

    def test_get_other_school_row_is_not_found(self, db_session, seeded, admin_a, school_b):
        other = db_session.query(Student).filter_by(school_id=school_b.id).first()
        repo = TenantScopedRepository(db_session, admin_a, Student)
        assert repo.get(other.id) is None
        assert repo.exists(other.id) is False

    def test_filter_naming_other_school_is_refused(self, db_session, seeded, admin_a, school_b):
        with pytest.raises(CrossTenantAccessDeniedError):
            TenantScopedRepository(db_session, admin_a, Student).list({"school_id": school_b.id})

        entry = db_session.query(TenantAuditLog).one()
        assert entry.action == AuditAction.CROSS_TENANT_ATTEMPT.value
        assert entry.school_id == admin_a.school_id
        assert entry.event_metadata["attempted_school_id"] == str(school_b.id)

    def test_count_is_scoped(self, db_session, seeded, admin_a, teacher_b):
        assert TenantScopedRepository(db_session, admin_a, Student).count() == 3
        assert TenantScopedRepository(db_session, teacher_b, Student).count() == 2

    def test_super_admin_sees_all_schools(self, db_session, seeded, make_context):
        repo = TenantScopedRepository(db_session, make_context(Role.SUPER_ADMIN), Student)
        assert repo.count() == 5

    def test_delete_cannot_reach_other_school(self, db_session, seeded, admin_a, school_b):
        other = db_session.query(Student).filter_by(school_id=school_b.id).first()
        assert TenantScopedRepository(db_session, admin_a, Student).delete(other.id) is False
        assert db_session.query(Student).filter_by(id=other.id).count() == 1

    def test_delete_own_row(self, db_session, seeded, admin_a):
        repo = TenantScopedRepository(db_session, admin_a, Student)
        target = repo.list({"full_name": "Ada"})[0]
        assert repo.delete(target.id) is True
        assert repo.count() == 2


class TestStamping:

    def test_create_is_stamped_with_context_school(self, db_session, school_a, admin_a):
        student = TenantScopedRepository(db_session, admin_a, Student).create({"full_name": "Ada"})
        db_session.expire_all()
        assert db_session.get(Student, student.id).school_id == school_a.id

    @pytest.mark.security
    def test_create_for_other_school_is_refused(self, db_session, school_b, admin_a):
        with pytest.raises(CrossTenantAccessDeniedError):
            TenantScopedRepository(db_session, admin_a, Student).create(
                {"full_name": "Mallory", "school_id": school_b.id}
            )
        assert db_session.query(Student).count() == 0
        assert _attempts(db_session) == 1


@pytest.mark.security
class TestImmutability:

    def test_reassignment_fails_and_row_is_unchanged(self, db_session, seeded, admin_a, school_a, school_b):
        repo = TenantScopedRepository(db_session, admin_a, Student)
        target = repo.list({"full_name": "Ada"})[0]

        with pytest.raises(TenantReassignmentForbiddenError):
            repo.update(target.id, {"school_id": school_b.id, "full_name": "Moved"})
        assert _attempts(db_session) == 1

        db_session.expire_all()
        stored = db_session.get(Student, target.id)
        assert stored.school_id == school_a.id
        assert stored.full_name == "Ada"

    def test_update_own_row(self, db_session, seeded, admin_a):
        repo = TenantScopedRepository(db_session, admin_a, Student)
        target = repo.list({"full_name": "Ada"})[0]
        updated = repo.update(target.id, {"full_name": "Ada L."})
        assert updated.full_name == "Ada L."

    def test_update_other_school_row_is_not_found(self, db_session, seeded, admin_a, school_b):
        other = db_session.query(Student).filter_by(school_id=school_b.id).first()
        assert TenantScopedRepository(db_session, admin_a, Student).update(
            other.id, {"full_name": "Hijacked"}
        ) is None

    def test_super_admin_may_move_a_row(self, db_session, seeded, make_context, school_b):
        repo = TenantScopedRepository(db_session, make_context(Role.SUPER_ADMIN), Complaint)
        complaint = Complaint(school_id=seeded[0].id, subject="Noise")
        db_session.add(complaint)
        db_session.commit()

        moved = repo.update(complaint.id, {"school_id": school_b.id})
        assert moved.school_id == school_b.id


class TestRegistration:

    def test_global_model_is_unfiltered(self, db_session, seeded, admin_a):
        assert TenantScopedRepository(db_session, admin_a, School).count() == 2

    def test_unregistered_model_is_rejected(self, db_session, admin_a):
        class LibraryBook:
            pass

        with pytest.raises(UnscopedEntityError):
            TenantScopedRepository(db_session, admin_a, LibraryBook)  # type: ignore[arg-type]


class TestSchoollessAccounts:

    @pytest.fixture
    def platform_admin(self, db_session):
        user = User(email="root@platform.test", full_name="Platform Admin", role="super_admin")
        db_session.add(user)
        db_session.commit()
        return user

    def test_super_admin_user_has_no_school(self, db_session, platform_admin):
        db_session.expire_all()
        assert db_session.get(User, platform_admin.id).school_id is None

    @pytest.mark.security
    def test_visible_only_to_super_admin(self, db_session, platform_admin, admin_a, make_context):
        assert TenantScopedRepository(db_session, admin_a, User).list() == []

        everyone = TenantScopedRepository(db_session, make_context(Role.SUPER_ADMIN), User).list()
        assert [user.email for user in everyone] == ["root@platform.test"]


class TestChangeAudit:

    def _changes(self, db_session):
        return (
            db_session.query(TenantAuditLog)
            .filter(TenantAuditLog.action.in_(["create", "update", "delete"]))
            .all()
        )

    def test_create_update_delete_are_recorded(self, db_session, school_a, admin_a):
        repo = TenantScopedRepository(db_session, admin_a, Student)
        student_id = repo.create({"full_name": "Ada"}).id
        repo.update(student_id, {"full_name": "Ada L."})
        assert repo.delete(student_id) is True

        by_action = {entry.action: entry for entry in self._changes(db_session)}
        assert sorted(by_action) == ["create", "delete", "update"]
        created, updated, deleted = by_action["create"], by_action["update"], by_action["delete"]
        assert all(entry.table_name == "students" for entry in (created, updated, deleted))
        assert all(entry.record_id == str(student_id) for entry in (created, updated, deleted))
        assert created.school_id == school_a.id
        assert created.event_metadata == {"source": "application"}

        assert created.new_values["full_name"] == "Ada"
        assert updated.old_values["full_name"] == "Ada"
        assert updated.new_values["full_name"] == "Ada L."
        assert deleted.old_values["full_name"] == "Ada L."
        assert deleted.new_values is None

    def test_missing_row_leaves_no_entry(self, db_session, seeded, admin_a, school_b):
        other = db_session.query(Student).filter_by(school_id=school_b.id).first()
        repo = TenantScopedRepository(db_session, admin_a, Student)
        assert repo.update(other.id, {"full_name": "Hijacked"}) is None
        assert repo.delete(other.id) is False
        assert self._changes(db_session) == []

    def test_can_be_switched_off(self, db_session, school_a, admin_a):
        TenantScopedRepository(db_session, admin_a, Student, audit_changes=False).create(
            {"full_name": "Ada"}
        )
        assert self._changes(db_session) == []

    def test_postgres_leaves_it_to_the_trigger(self, admin_a):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"
        assert TenantScopedRepository(session, admin_a, Student).audit_changes is False
