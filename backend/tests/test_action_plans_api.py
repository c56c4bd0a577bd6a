import uuid
from datetime import datetime, timezone

from backend.app.models import User

JAN_LOCKED = datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc)


def _dept() -> str:
    return f"D{uuid.uuid4().hex[:8]}".upper()


def _headers(session, role: str, department_code: str | None = None) -> dict:
    email = f"{role}-{uuid.uuid4().hex[:8]}@example.com"
    session.add(User(email=email, name=role, role=role, department_code=department_code))
    session.commit()
    return {"X-User-Email": email}


def _create(client, headers, dept: str, **fields) -> dict:
    body = {"department_code": dept, "month": "January", "year": 2026, "action_plan": "Reconcile vendor ledger"}
    body.update(fields)
    resp = client.post("/api/action-plans", json=body, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def test_requests_without_identity_are_rejected(api_client):
    resp = api_client.get("/api/action-plans")
    assert resp.status_code == 401


def test_create_and_read_plan(api_client, sqlite_session):
    dept = _dept()
    staff = _headers(sqlite_session, "staff", dept)

    created = _create(api_client, staff, dept.lower())
    assert created["department_code"] == dept
    assert created["month"] == "Jan"
    assert created["status"] == "Open"
    assert created["submission_status"] == "draft"
    assert created["origin"] is None
    assert created["blocker"]["is_escalated"] is False

    fetched = api_client.get(f"/api/action-plans/{created['id']}", headers=staff)
    assert fetched.status_code == 200
    assert fetched.json()["action_plan"] == "Reconcile vendor ledger"

    listed = api_client.get("/api/action-plans", params={"department_code": dept}, headers=staff)
    assert [row["id"] for row in listed.json()] == [created["id"]]

    audit = api_client.get(f"/api/action-plans/{created['id']}/audit", headers=staff)
    assert audit.status_code == 200
    assert [item["change_type"] for item in audit.json()["items"]] == ["CREATED"]


def test_other_departments_are_hidden(api_client, sqlite_session):
    dept = _dept()
    owner = _headers(sqlite_session, "staff", dept)
    outsider = _headers(sqlite_session, "leader", _dept())
    plan = _create(api_client, owner, dept)

    resp = api_client.get(f"/api/action-plans/{plan['id']}", headers=outsider)
    assert resp.status_code == 403


def test_unknown_plan_is_404(api_client, sqlite_session):
    admin = _headers(sqlite_session, "admin")
    resp = api_client.get(f"/api/action-plans/{uuid.uuid4()}", headers=admin)
    assert resp.status_code == 404


def test_invalid_month_is_rejected(api_client, sqlite_session):
    dept = _dept()
    staff = _headers(sqlite_session, "staff", dept)
    resp = api_client.post(
        "/api/action-plans",
        json={"department_code": dept, "month": "Smarch", "year": 2026},
        headers=staff,
    )
    assert resp.status_code == 422


def test_locked_period_returns_structured_error(api_client, sqlite_session, frozen_clock):
    dept = _dept()
    staff = _headers(sqlite_session, "staff", dept)
    plan = _create(api_client, staff, dept)

    status = api_client.get(f"/api/action-plans/{plan['id']}/lock-status", headers=staff).json()
    assert status["is_locked"] is False
    assert status["message"].startswith("Editable for")

    frozen_clock.now = JAN_LOCKED
    resp = api_client.patch(f"/api/action-plans/{plan['id']}", json={"remark": "Late"}, headers=staff)
    assert resp.status_code == 423
    body = resp.json()
    assert body["code"] == "PERIOD_LOCKED"
    assert body["retryable"] is False
    assert body["details"]["plan_id"] == plan["id"]
    assert body["details"]["year"] == 2026

    status = api_client.get(f"/api/action-plans/{plan['id']}/lock-status", headers=staff).json()
    assert status["is_locked"] is True
    assert status["message"] == "Locked since Feb 6, 2026"

    requested = api_client.post(
        f"/api/action-plans/{plan['id']}/unlock-request",
        json={"reason": "Invoice arrived late"},
        headers=staff,
    )
    assert requested.status_code == 200
    assert requested.json()["unlock_status"] == "pending"


def test_only_admins_grade(api_client, sqlite_session):
    dept = _dept()
    staff = _headers(sqlite_session, "staff", dept)
    plan = _create(api_client, staff, dept)

    resp = api_client.post(f"/api/action-plans/{plan['id']}/grade", json={"score": 90}, headers=staff)
    assert resp.status_code == 403


def test_submit_and_grade_flow(api_client, sqlite_session, recorded_notifications):
    dept = _dept()
    staff = _headers(sqlite_session, "staff", dept)
    leader = _headers(sqlite_session, "leader", dept)
    admin = _headers(sqlite_session, "admin")
    plan = _create(api_client, staff, dept)
    period = {"department_code": dept, "month": "Jan", "year": 2026}

    unresolved = api_client.post("/api/action-plans/finalize", json=period, headers=leader)
    assert unresolved.status_code == 422
    assert unresolved.json()["details"]["plan_ids"] == [plan["id"]]

    moved = api_client.post(f"/api/action-plans/{plan['id']}/status", json={"status": "Achieved"}, headers=staff)
    assert moved.status_code == 200

    finalized = api_client.post("/api/action-plans/finalize", json=period, headers=leader)
    assert finalized.status_code == 200
    assert finalized.json()["submitted"] == 1
    assert finalized.json()["auto_graded"] == 0

    edit = api_client.patch(f"/api/action-plans/{plan['id']}", json={"remark": "late"}, headers=staff)
    assert edit.status_code == 409
    assert edit.json()["code"] == "PLAN_SUBMITTED"

    graded = api_client.post(
        f"/api/action-plans/{plan['id']}/grade",
        json={"score": 85, "status": "Achieved", "feedback": "Solid evidence"},
        headers=admin,
    )
    assert graded.status_code == 200
    assert graded.json()["applied"] is True
    assert graded.json()["plan"]["quality_score"] == 85
    assert graded.json()["carry_over_child"] is None
    assert recorded_notifications[-1][:2] == ("plan_graded", plan["id"])

    again = api_client.post(
        f"/api/action-plans/{plan['id']}/grade", json={"score": 10, "status": "Achieved"}, headers=admin
    )
    assert again.json()["applied"] is False
    assert again.json()["plan"]["quality_score"] == 85

    recall = api_client.post("/api/action-plans/recall", json=period, headers=leader)
    assert recall.status_code == 200
    assert recall.json()["recalled"] == 0
    assert recall.json()["skipped_graded"] == 1


def test_lock_settings_endpoints(api_client, sqlite_session):
    admin = _headers(sqlite_session, "admin")
    staff = _headers(sqlite_session, "staff", _dept())

    current = api_client.get("/api/lock-settings", headers=staff).json()
    assert current["lock_cutoff_day"] == 6
    assert current["monthly_overrides"] == []

    denied = api_client.put("/api/lock-settings", json={"lock_cutoff_day": 10}, headers=staff)
    assert denied.status_code == 403

    invalid = api_client.put("/api/lock-settings", json={"lock_cutoff_day": 40}, headers=admin)
    assert invalid.status_code == 422

    updated = api_client.put("/api/lock-settings", json={"lock_cutoff_day": 10}, headers=admin)
    assert updated.status_code == 200
    assert updated.json()["lock_cutoff_day"] == 10
    assert updated.json()["carry_over_penalty_1"] == 80

    deadline = api_client.get("/api/lock-settings/deadline", params={"month": "Jan", "year": 2026}, headers=staff)
    assert deadline.status_code == 200
    value = _parse(deadline.json()["deadline"])
    assert (value.month, value.day) == (2, 10)
    assert deadline.json()["has_override"] is False

    forced = api_client.put(
        "/api/lock-settings/overrides",
        json={"month_index": 0, "year": 2026, "is_force_open": True},
        headers=admin,
    )
    assert forced.status_code == 200
    assert forced.json()["monthly_overrides"][0]["is_force_open"] is True

    deadline = api_client.get("/api/lock-settings/deadline", params={"month": "Jan", "year": 2026}, headers=staff)
    assert deadline.json()["has_override"] is True
    assert deadline.json()["is_force_open"] is True

    removed = api_client.delete("/api/lock-settings/overrides/2026/0", headers=admin)
    assert removed.status_code == 200
    assert removed.json()["monthly_overrides"] == []

    bad_month = api_client.get("/api/lock-settings/deadline", params={"month": "Smarch", "year": 2026}, headers=staff)
    assert bad_month.status_code == 422
    assert bad_month.json()["code"] == "VALIDATION_ERROR"


def test_config_endpoint(api_client):
    resp = api_client.get("/api/config")
    assert resp.status_code == 200
    assert resp.json()["lock_timezone"] == "UTC"


def test_lists_are_scoped_to_the_callers_department(api_client, sqlite_session):
    own_dept, other_dept = _dept(), _dept()
    staff = _headers(sqlite_session, "staff", own_dept)
    other = _headers(sqlite_session, "staff", other_dept)
    admin = _headers(sqlite_session, "admin")
    mine = _create(api_client, staff, own_dept)
    theirs = _create(api_client, other, other_dept)
    for plan, headers in ((mine, staff), (theirs, other)):
        deleted = api_client.post(f"/api/action-plans/{plan['id']}/delete", json={"reason": "Duplicate"}, headers=headers)
        assert deleted.status_code == 200

    listed = api_client.get("/api/action-plans", params={"include_deleted": True}, headers=staff).json()
    assert {row["department_code"] for row in listed} == {own_dept}

    binned = api_client.get("/api/action-plans/deleted", headers=staff).json()
    assert [row["id"] for row in binned] == [mine["id"]]

    denied = api_client.get("/api/action-plans", params={"department_code": other_dept}, headers=staff)
    assert denied.status_code == 403

    everything = {row["id"] for row in api_client.get("/api/action-plans/deleted", headers=admin).json()}
    assert {mine["id"], theirs["id"]} <= everything


def test_lists_need_a_department_for_unassigned_staff(api_client, sqlite_session):
    floating = _headers(sqlite_session, "staff")
    resp = api_client.get("/api/action-plans", headers=floating)
    assert resp.status_code == 403
