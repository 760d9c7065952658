import sqlite3
from datetime import date, datetime, timezone

import pytest

from ptw_mvp.app import store
from ptw_mvp.app.errors import AlreadyExists, InvalidPermitData, PermitLocked, PermitNotFound, TransitionFailed
from ptw_mvp.app.models import ApproverSlot, PermitStatus, Role
from ptw_mvp.app.permissions import pending_slots
from ptw_mvp.app.workflow import execute_transition, sign_off


def _yes(_a):
    return True


def test_seeded_users_cover_every_role(users):
    assert {u.role for u in users.values()} == set(Role)


def test_create_permit_starts_in_draft(users):
    worker = users["worker"]
    permit = store.create_permit({"permit_type": "hot_work", "location": "Hall 3"}, worker)
    year = datetime.now(timezone.utc).year

    assert permit.status == PermitStatus.DRAFT
    assert permit.permit_code == f"HW-{year}-001"
    assert permit.requestor_name == "worker"
    assert [h.status for h in permit.status_history] == [PermitStatus.DRAFT]

    second = store.create_permit({"permit_type": "hot_work"}, worker)
    assert second.permit_code == f"HW-{year}-002"
    other = store.create_permit({"permit_type": "general"}, worker)
    assert other.permit_code == f"GN-{year}-001"


def test_create_permit_validates(users):
    with pytest.raises(InvalidPermitData):
        store.create_permit({"permit_type": "underwater"}, users["worker"])
    with pytest.raises(InvalidPermitData):
        store.create_permit({"start_date": "2026-05-02", "end_date": "2026-05-01"}, users["worker"])
    with pytest.raises(InvalidPermitData):
        store.create_permit({"start_date": "not a date"}, users["worker"])


def test_apply_transition_stamps_and_records_history(users):
    worker = users["worker"]
    permit = store.create_permit({"location": "Tank"}, worker)

    updated = execute_transition(worker, permit, "submit", store, comment="ready", confirm=_yes)

    assert updated.status == PermitStatus.PENDING
    assert updated.submitted_at is not None
    assert updated.submitted_by == worker.id
    last = updated.status_history[-1]
    assert (last.status, last.username, last.comment) == (PermitStatus.PENDING, "worker", "ready")
    assert store.get_permit(permit.id).status == PermitStatus.PENDING


def test_reject_comment_is_kept_on_permit(users):
    permit = store.create_permit({}, users["worker"])
    permit = execute_transition(users["worker"], permit, "submit", store, confirm=_yes)
    rejected = execute_transition(users["dhead"], permit, "reject", store, comment="No gas test", confirm=_yes)
    assert rejected.status == PermitStatus.REJECTED
    assert rejected.additional_comments == "No gas test"


def test_missing_permit_is_reported(users):
    with pytest.raises(PermitNotFound):
        store.get_permit(999)
    with pytest.raises(PermitNotFound):
        store.apply_transition(999, PermitStatus.PENDING, users["admin"])


def test_transition_is_all_or_nothing(users, monkeypatch):
    worker = users["worker"]
    permit = store.create_permit({}, worker)

    def broken_history(conn, *args, **kwargs):
        raise sqlite3.OperationalError("history table unavailable")

    monkeypatch.setattr(store, "_add_history", broken_history)
    with pytest.raises(TransitionFailed):
        execute_transition(worker, permit, "submit", store, confirm=_yes)
    monkeypatch.undo()

    reloaded = store.get_permit(permit.id)
    assert reloaded.status == PermitStatus.DRAFT
    assert len(reloaded.status_history) == 1


def test_identity_fields_locked_after_submit(users):
    worker = users["worker"]
    permit = store.create_permit({"permit_type": "electrical"}, worker)
    execute_transition(worker, permit, "submit", store, confirm=_yes)

    with pytest.raises(PermitLocked):
        store.update_permit(permit.id, {"requestor_name": "someone-else"}, users["admin"])
    with pytest.raises(PermitLocked):
        store.update_permit(permit.id, {"permit_type": "chemical"}, users["admin"])

    # Unchanged identity values and other fields are fine.
    updated = store.update_permit(permit.id, {"permit_type": "electrical", "location": "Panel 4"}, users["admin"])
    assert updated.location == "Panel 4"


def test_withdraw_reopens_identity_fields(users):
    worker = users["worker"]
    permit = store.create_permit({}, worker)
    permit = execute_transition(worker, permit, "submit", store, confirm=_yes)
    permit = execute_transition(worker, permit, "withdraw", store, confirm=_yes)
    assert permit.status == PermitStatus.DRAFT
    updated = store.update_permit(permit.id, {"permit_type": "height"}, worker)
    assert updated.permit_type.value == "height"


def test_record_approval(users):
    permit = store.create_permit({"department_head": "dhead"}, users["worker"])
    updated = store.record_approval(permit.id, ApproverSlot.DEPARTMENT_HEAD, users["dhead"])
    assert updated.department_head_approval
    assert updated.department_head_approval_date is not None
    assert not updated.maintenance_approval


def test_delete_permit_removes_history(users, db_path):
    permit = store.create_permit({}, users["worker"])
    store.delete_permit(permit.id, users["admin"])
    with pytest.raises(PermitNotFound):
        store.get_permit(permit.id)
    with store.db() as conn:
        n = conn.execute("SELECT COUNT(*) FROM permit_status_history WHERE permit_id=?", (permit.id,)).fetchone()[0]
    assert n == 0


def test_list_and_stats(users):
    worker = users["worker"]
    a = store.create_permit({"location": "Boiler house"}, worker)
    store.create_permit({"location": "Roof"}, worker)
    execute_transition(worker, a, "submit", store, confirm=_yes)

    assert [p.id for p in store.list_permits(status=PermitStatus.PENDING)] == [a.id]
    assert [p.location for p in store.list_permits(q="roof")] == ["Roof"]
    stats = store.permit_stats()
    assert stats["pendingApproval"] == 1
    assert stats["activePermits"] == 0


def test_users_and_sessions(users):
    created = store.create_user("newbie", Role.EMPLOYEE, "pw", "admin")
    assert created.role == Role.EMPLOYEE
    with pytest.raises(AlreadyExists):
        store.create_user("newbie", Role.EMPLOYEE, "pw", "admin")

    assert store.verify_login("newbie", "wrong") is None
    user = store.verify_login("newbie", "pw")
    token = store.create_session(user)
    assert store.user_for_session(token).username == "newbie"
    store.revoke_session(token)
    assert store.user_for_session(token) is None

    promoted = store.update_user_role("newbie", Role.SUPERVISOR, "admin")
    assert promoted.role == Role.SUPERVISOR
    with pytest.raises(PermitNotFound):
        store.update_user_role("ghost", Role.SUPERVISOR, "admin")


def test_return_to_draft_clears_sign_offs(users):
    worker = users["worker"]
    permit = store.create_permit({"department_head": "dhead", "maintenance_approver": "maint"}, worker)
    permit = execute_transition(worker, permit, "submit", store, confirm=_yes)
    permit = sign_off(users["dhead"], permit, ApproverSlot.DEPARTMENT_HEAD, store)
    assert pending_slots(permit) == [ApproverSlot.MAINTENANCE]

    permit = execute_transition(worker, permit, "withdraw", store, confirm=_yes)
    assert not permit.department_head_approval
    assert permit.department_head_approval_date is None

    store.update_permit(permit.id, {"description": "Revised isolation plan"}, worker)
    permit = execute_transition(worker, store.get_permit(permit.id), "submit", store, confirm=_yes)
    assert pending_slots(permit) == [ApproverSlot.DEPARTMENT_HEAD, ApproverSlot.MAINTENANCE]

    permit = sign_off(users["maint"], permit, ApproverSlot.MAINTENANCE, store)
    assert permit.status == PermitStatus.PENDING


def test_revise_after_reject_clears_sign_offs(users):
    worker = users["worker"]
    permit = store.create_permit({"department_head": "dhead", "safety_officer": "safety"}, worker)
    permit = execute_transition(worker, permit, "submit", store, confirm=_yes)
    permit = sign_off(users["dhead"], permit, ApproverSlot.DEPARTMENT_HEAD, store)
    permit = execute_transition(users["safety"], permit, "reject", store, comment="No gas test", confirm=_yes)
    permit = execute_transition(worker, permit, "withdraw", store)
    assert permit.status == PermitStatus.DRAFT
    assert pending_slots(permit) == [ApproverSlot.DEPARTMENT_HEAD, ApproverSlot.SAFETY_OFFICER]


def test_expired_today_counts_only_permits_ending_today(users):
    worker = users["worker"]
    today = store.create_permit({"end_date": "2026-03-10T17:00:00+00:00"}, worker)
    earlier = store.create_permit({"end_date": "2026-03-09T17:00:00+00:00"}, worker)
    store.create_permit({"end_date": "2026-03-10T08:00:00+00:00"}, worker)
    with store.db() as conn:
        conn.execute("UPDATE permits SET status='expired' WHERE id IN (?, ?)", (today.id, earlier.id))

    stats = store.permit_stats(today=date(2026, 3, 10))
    assert stats["expiredToday"] == 1
    assert "expired" not in stats


def test_admin_password_reset(users):
    user = store.verify_login("worker", "password5")
    token = store.create_session(user)

    store.set_password("worker", "new-secret", "admin")

    assert store.verify_login("worker", "password5") is None
    assert store.verify_login("worker", "new-secret").username == "worker"
    assert store.user_for_session(token) is None
    with pytest.raises(InvalidPermitData):
        store.set_password("worker", "", "admin")
    with pytest.raises(PermitNotFound):
        store.set_password("ghost", "pw", "admin")
