import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from backend.app.db import SessionLocal
from backend.app.domain.contracts import AUTO_GRADE_FEEDBACK, GradeUpdate, PlanCreate, Resolution
from backend.app.domain.errors import CarryOverCapExceeded, ItemRecalled, PeriodLocked, ValidationError
from backend.app.models import ActionPlan, AuditLog, User
from backend.app.services import action_plan_service, carry_over_service, lock_service, submission_service

JAN_OPEN = datetime(2026, 1, 28, 9, 0, tzinfo=timezone.utc)
JAN_LOCKED = datetime(2026, 2, 10, 9, 0, tzinfo=timezone.utc)
MAR_OPEN = datetime(2026, 3, 25, 9, 0, tzinfo=timezone.utc)


def _dept() -> str:
    return f"D{uuid.uuid4().hex[:8]}".upper()


def _create_user(session, role: str, department_code: str | None = None) -> User:
    user = User(
        email=f"{role}-{uuid.uuid4().hex[:8]}@example.com",
        name=role,
        role=role,
        department_code=department_code,
    )
    session.add(user)
    session.flush()
    return user


def _plan(session, actor, dept: str, status: str = "Achieved", month: str = "Jan", now=JAN_OPEN, **fields) -> ActionPlan:
    plan = action_plan_service.create_plan(
        session,
        payload=PlanCreate(
            department_code=dept,
            month=month,
            year=2026,
            goal_strategy="Collections",
            action_plan=f"Plan {uuid.uuid4().hex[:6]}",
            indicator="Overdue ratio < 5%",
            pic="Rina",
        ),
        actor=actor,
        now=now,
    )
    plan.status = status
    for key, value in fields.items():
        setattr(plan, key, value)
    session.flush()
    return plan


def _children(session, source_id: str):
    return session.execute(select(ActionPlan).where(ActionPlan.origin_plan_id == source_id)).scalars().all()


# -------------------------
# Finalize
# -------------------------

def test_finalize_requires_every_plan_resolved(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    _plan(sqlite_session, leader, dept, status="Achieved")
    open_plan = _plan(sqlite_session, leader, dept, status="On Progress")

    with pytest.raises(ValidationError) as excinfo:
        submission_service.finalize_month(
            sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
        )
    assert excinfo.value.details["plan_ids"] == [open_plan.id]


def test_finalize_auto_grades_failures_and_is_idempotent(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    achieved = _plan(sqlite_session, leader, dept, status="Achieved")
    failed = _plan(sqlite_session, leader, dept, status="Not Achieved", resolution_type="dropped")

    result = submission_service.finalize_month(
        sqlite_session, department_code=dept, month="January", year=2026, actor=leader, now=JAN_OPEN
    )
    sqlite_session.commit()

    assert result.submitted == 2
    assert result.auto_graded == 1
    assert result.carry_over.created == []
    assert achieved.submission_status == "submitted"
    assert achieved.quality_score is None
    assert failed.quality_score == 0
    assert failed.admin_feedback == AUTO_GRADE_FEEDBACK
    assert submission_service.is_auto_graded(failed)

    again = submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
    )
    assert again.submitted == 0


def test_finalize_after_deadline_is_locked_for_leaders(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    _plan(sqlite_session, leader, dept, status="Achieved")

    with pytest.raises(PeriodLocked):
        submission_service.finalize_month(
            sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_LOCKED
        )
    result = submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=admin, now=JAN_LOCKED
    )
    assert result.submitted == 1


def test_finalize_creates_one_carry_over_child(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    source = _plan(sqlite_session, leader, dept, status="Not Achieved", resolution_type="carried_over")

    result = submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
    )
    sqlite_session.commit()

    assert result.carry_over.created == [source.id]
    children = _children(sqlite_session, source.id)
    assert len(children) == 1
    child = children[0]
    assert child.month == "Feb"
    assert child.year == 2026
    assert child.carry_over_status == "Late_Month_1"
    assert child.max_possible_score == 80
    assert child.status == "Open"
    assert child.submission_status == "draft"
    assert child.action_plan == source.action_plan
    assert child.goal_strategy == "Collections"
    assert action_plan_service.get_origin(sqlite_session, child).id == source.id

    # A second pass over the same month does not duplicate the child.
    _plan(sqlite_session, leader, dept, status="Achieved")
    rerun = submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
    )
    sqlite_session.commit()
    assert rerun.carry_over.created == []
    assert rerun.carry_over.skipped == [source.id]
    assert len(_children(sqlite_session, source.id)) == 1


def test_carry_over_chain_applies_penalty_tiers(sqlite_session):
    dept = _dept()
    admin = _create_user(sqlite_session, "admin")
    source = _plan(sqlite_session, admin, dept, status="Not Achieved", resolution_type="carried_over")

    first = carry_over_service.carry_over_plan(sqlite_session, source.id, actor=admin, now=JAN_OPEN)
    first.child.status = "Not Achieved"
    second = carry_over_service.carry_over_plan(sqlite_session, first.child.id, actor=admin, now=JAN_OPEN)

    assert first.child.carry_over_status == "Late_Month_1"
    assert first.child.max_possible_score == 80
    assert second.child.carry_over_status == "Late_Month_2"
    assert second.child.max_possible_score == 50
    assert second.child.month == "Mar"

    second.child.status = "Not Achieved"
    with pytest.raises(CarryOverCapExceeded):
        carry_over_service.carry_over_plan(sqlite_session, second.child.id, actor=admin, now=JAN_OPEN)


def test_manual_carry_over_is_idempotent(sqlite_session):
    dept = _dept()
    admin = _create_user(sqlite_session, "admin")
    source = _plan(sqlite_session, admin, dept, status="Not Achieved")

    first = carry_over_service.carry_over_plan(sqlite_session, source.id, actor=admin, now=JAN_OPEN)
    again = carry_over_service.carry_over_plan(sqlite_session, source.id, actor=admin, now=JAN_OPEN)
    assert first.created is True
    assert again.created is False
    assert again.child.id == first.child.id
    assert source.resolution_type == "carried_over"


def test_carry_over_audit_names_actor_without_email(sqlite_session):
    dept = _dept()
    admin = _create_user(sqlite_session, "admin")
    source = _plan(sqlite_session, admin, dept, status="Not Achieved")
    service_account = SimpleNamespace(id="svc-carry-over", role="admin")

    result = carry_over_service.carry_over_plan(sqlite_session, source.id, actor=service_account, now=JAN_OPEN)
    sqlite_session.flush()

    rows = sqlite_session.execute(
        select(AuditLog).where(AuditLog.plan_id.in_([source.id, result.child.id]))
    ).scalars().all()
    actors = {(row.plan_id, row.change_type): row.actor for row in rows}
    assert actors[(source.id, "CARRY_OVER")] == "svc-carry-over"
    assert actors[(result.child.id, "CREATED")] == "svc-carry-over"


def test_manual_carry_over_requires_not_achieved(sqlite_session):
    dept = _dept()
    admin = _create_user(sqlite_session, "admin")
    source = _plan(sqlite_session, admin, dept, status="Achieved")
    with pytest.raises(ValidationError):
        carry_over_service.carry_over_plan(sqlite_session, source.id, actor=admin, now=JAN_OPEN)


# -------------------------
# Resolve and submit
# -------------------------

def test_resolve_and_submit_needs_a_decision_for_each_unresolved_plan(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    first = _plan(sqlite_session, leader, dept, status="On Progress")
    _plan(sqlite_session, leader, dept, status="Blocked", is_blocked=True, blocker_reason="Vendor has not delivered")

    with pytest.raises(ValidationError):
        submission_service.resolve_and_submit(
            sqlite_session,
            department_code=dept,
            month="Jan",
            year=2026,
            resolutions=[Resolution(plan_id=first.id, action="drop")],
            actor=leader,
            now=JAN_OPEN,
        )
    assert first.status == "On Progress"


def test_resolve_and_submit_closes_out_the_month(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    done = _plan(sqlite_session, leader, dept, status="Achieved")
    carried = _plan(sqlite_session, leader, dept, status="On Progress")
    dropped = _plan(
        sqlite_session,
        leader,
        dept,
        status="Blocked",
        is_blocked=True,
        blocker_reason="Vendor has not delivered",
        attention_level="Leader",
    )

    result = submission_service.resolve_and_submit(
        sqlite_session,
        department_code=dept,
        month="Jan",
        year=2026,
        resolutions=[
            Resolution(plan_id=carried.id, action="carry_over"),
            Resolution(plan_id=dropped.id, action="drop"),
        ],
        actor=leader,
        now=JAN_OPEN,
    )
    sqlite_session.commit()

    assert result.submitted == 3
    assert result.auto_graded == 2
    assert result.carry_over.created == [carried.id]
    assert done.quality_score is None
    assert dropped.status == "Not Achieved"
    assert dropped.resolution_type == "dropped"
    assert dropped.is_blocked is False
    assert dropped.attention_level == "Standard"
    assert carried.resolution_type == "carried_over"
    assert _children(sqlite_session, dropped.id) == []
    assert len(_children(sqlite_session, carried.id)) == 1


def test_resolve_and_submit_rejects_carry_over_past_cap(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    late = _plan(sqlite_session, leader, dept, status="On Progress", carry_over_status="Late_Month_2")

    with pytest.raises(CarryOverCapExceeded):
        submission_service.resolve_and_submit(
            sqlite_session,
            department_code=dept,
            month="Jan",
            year=2026,
            resolutions=[Resolution(plan_id=late.id, action="carry_over")],
            actor=leader,
            now=JAN_OPEN,
        )
    assert late.status == "On Progress"
    assert late.submission_status == "draft"


# -------------------------
# Recall
# -------------------------

def test_recall_month_skips_graded_items(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    graded = _plan(sqlite_session, leader, dept, month="Mar", status="Achieved", now=MAR_OPEN)
    pending = _plan(sqlite_session, leader, dept, month="Mar", status="Achieved", now=MAR_OPEN)
    failed = _plan(
        sqlite_session, leader, dept, month="Mar", status="Not Achieved", resolution_type="dropped", now=MAR_OPEN
    )
    submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Mar", year=2026, actor=leader, now=MAR_OPEN
    )
    submission_service.grade_plan(
        sqlite_session, graded.id, payload=GradeUpdate(score=95, status="Achieved"), actor=admin, now=MAR_OPEN
    )
    sqlite_session.commit()

    result = submission_service.recall_month(
        sqlite_session, department_code=dept, month="Mar", year=2026, actor=leader, now=MAR_OPEN
    )
    sqlite_session.commit()

    assert result.recalled == 2
    assert result.skipped_graded == 1
    assert graded.submission_status == "submitted"
    assert graded.quality_score == 95
    assert pending.submission_status == "draft"
    assert failed.submission_status == "draft"
    assert failed.quality_score is None
    assert failed.admin_feedback is None


def test_recall_removes_untouched_children_and_keeps_edited_ones(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    untouched = _plan(sqlite_session, leader, dept, status="Not Achieved", resolution_type="carried_over")
    edited = _plan(sqlite_session, leader, dept, status="Not Achieved", resolution_type="carried_over")
    submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
    )
    edited_child = _children(sqlite_session, edited.id)[0]
    edited_child.status = "On Progress"
    sqlite_session.commit()

    result = submission_service.recall_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
    )
    sqlite_session.commit()

    assert result.recalled == 2
    assert len(result.children_deleted) == 1
    assert result.children_preserved == [edited_child.id]
    assert _children(sqlite_session, untouched.id) == []
    assert _children(sqlite_session, edited.id)[0].id == edited_child.id


def test_recall_single_plan(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    plan = _plan(sqlite_session, leader, dept, status="Achieved")
    with pytest.raises(ValidationError):
        submission_service.recall_plan(sqlite_session, plan.id, actor=leader, now=JAN_OPEN)

    submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
    )
    result = submission_service.recall_plan(sqlite_session, plan.id, actor=leader, now=JAN_OPEN)
    assert result.recalled == 1
    assert plan.submission_status == "draft"
    assert plan.submitted_at is None


# -------------------------
# Grading
# -------------------------

def _submitted(session, leader, dept, status="Achieved") -> ActionPlan:
    plan = _plan(session, leader, dept, status=status, resolution_type="dropped" if status == "Not Achieved" else None)
    submission_service.finalize_month(session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN)
    session.commit()
    return plan


def test_grade_clamps_score_to_plan_maximum(sqlite_session, recorded_notifications):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _plan(sqlite_session, leader, dept, status="Achieved", max_possible_score=80)
    submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
    )

    outcome = submission_service.grade_plan(
        sqlite_session, plan.id, payload=GradeUpdate(score=95, status="Achieved", feedback="Good"), actor=admin, now=JAN_OPEN
    )
    sqlite_session.commit()

    assert outcome.applied is True
    assert plan.quality_score == 80
    assert plan.reviewed_by == admin.id
    assert plan.admin_feedback == "Good"
    assert recorded_notifications[-1][0] == "plan_graded"


def test_grade_is_a_no_op_once_graded(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)

    submission_service.grade_plan(sqlite_session, plan.id, payload=GradeUpdate(score=90, status="Achieved"), actor=admin, now=JAN_OPEN)
    again = submission_service.grade_plan(
        sqlite_session, plan.id, payload=GradeUpdate(score=10, status="Achieved"), actor=admin, now=JAN_OPEN
    )
    assert again.applied is False
    assert plan.quality_score == 90


def test_grade_on_draft_plan_reports_recall(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _plan(sqlite_session, leader, dept, status="Achieved")

    with pytest.raises(ItemRecalled) as excinfo:
        submission_service.grade_plan(sqlite_session, plan.id, payload=GradeUpdate(score=90), actor=admin, now=JAN_OPEN)
    assert excinfo.value.status_code == 409


def test_grade_loses_race_against_concurrent_recall(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)
    # The grading session has the plan loaded as submitted.
    assert sqlite_session.get(ActionPlan, plan.id).submission_status == "submitted"

    other = SessionLocal()
    try:
        submission_service.recall_plan(other, plan.id, actor=leader, now=JAN_OPEN)
        other.commit()
    finally:
        other.close()

    with pytest.raises(ItemRecalled):
        submission_service.grade_plan(
            sqlite_session, plan.id, payload=GradeUpdate(score=90, status="Achieved"), actor=admin, now=JAN_OPEN
        )
    sqlite_session.rollback()
    fresh = sqlite_session.get(ActionPlan, plan.id)
    assert fresh.submission_status == "draft"
    assert fresh.quality_score is None


def test_grade_losing_to_another_grade_is_a_no_op(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)
    assert sqlite_session.get(ActionPlan, plan.id).quality_score is None

    other = SessionLocal()
    try:
        submission_service.grade_plan(other, plan.id, payload=GradeUpdate(score=70, status="Achieved"), actor=admin, now=JAN_OPEN)
        other.commit()
    finally:
        other.close()

    outcome = submission_service.grade_plan(
        sqlite_session, plan.id, payload=GradeUpdate(score=90, status="Achieved"), actor=admin, now=JAN_OPEN
    )
    assert outcome.applied is False
    assert outcome.plan.quality_score == 70


def test_revision_verdict_opens_grace_window(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)

    outcome = submission_service.grade_plan(
        sqlite_session,
        plan.id,
        payload=GradeUpdate(verdict="revision", revision_days=5, feedback="Attach the evidence"),
        actor=admin,
        now=JAN_LOCKED,
    )
    sqlite_session.commit()

    assert outcome.applied is True
    assert plan.status == "On Progress"
    assert plan.submission_status == "draft"
    assert plan.quality_score is None
    expiry = plan.temporary_unlock_expiry.replace(tzinfo=timezone.utc)
    assert abs(expiry - (JAN_LOCKED + timedelta(days=5))) < timedelta(seconds=1)

    # The owner may edit past the deadline while the window is open.
    lock_service.ensure_plan_writable(sqlite_session, plan, actor=leader, now=JAN_LOCKED + timedelta(days=1))
    with pytest.raises(PeriodLocked):
        lock_service.ensure_plan_writable(sqlite_session, plan, actor=leader, now=JAN_LOCKED + timedelta(days=6))


def test_revision_defaults_to_configured_grace_days(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)

    submission_service.grade_plan(sqlite_session, plan.id, payload=GradeUpdate(verdict="revision"), actor=admin, now=JAN_OPEN)
    expiry = plan.temporary_unlock_expiry.replace(tzinfo=timezone.utc)
    assert abs(expiry - (JAN_OPEN + timedelta(days=3))) < timedelta(seconds=1)


def test_kickback_requires_feedback(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)

    with pytest.raises(ValidationError):
        submission_service.grade_plan(sqlite_session, plan.id, payload=GradeUpdate(), actor=admin, now=JAN_OPEN)
    outcome = submission_service.grade_plan(
        sqlite_session, plan.id, payload=GradeUpdate(feedback="Missing evidence"), actor=admin, now=JAN_OPEN
    )
    assert outcome.applied is True
    assert plan.submission_status == "draft"
    assert plan.admin_feedback == "Missing evidence"


def test_carry_over_verdict_creates_child(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)

    outcome = submission_service.grade_plan(
        sqlite_session, plan.id, payload=GradeUpdate(verdict="carry_over", score=40), actor=admin, now=JAN_OPEN
    )
    sqlite_session.commit()

    assert plan.status == "Not Achieved"
    assert plan.quality_score == 40
    assert plan.resolution_type == "carried_over"
    assert outcome.carry_over is not None
    assert outcome.carry_over.child.carry_over_status == "Late_Month_1"
    assert outcome.carry_over.child.origin_plan_id == plan.id


def test_failed_verdict_drops_plan(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)

    outcome = submission_service.grade_plan(
        sqlite_session, plan.id, payload=GradeUpdate(verdict="failed", score=20), actor=admin, now=JAN_OPEN
    )
    assert outcome.carry_over is None
    assert plan.status == "Not Achieved"
    assert plan.resolution_type == "dropped"
    assert _children(sqlite_session, plan.id) == []


def test_reset_grade_wipes_back_to_open(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    plan = _submitted(sqlite_session, leader, dept)
    plan.remark = "Evidence in the shared drive"
    submission_service.grade_plan(sqlite_session, plan.id, payload=GradeUpdate(score=90, status="Achieved"), actor=admin, now=JAN_OPEN)

    submission_service.reset_grade(sqlite_session, plan.id, actor=admin, now=JAN_OPEN)
    sqlite_session.commit()

    assert plan.status == "Open"
    assert plan.submission_status == "draft"
    assert plan.quality_score is None
    assert plan.admin_feedback is None
    assert plan.remark is None
    assert plan.reviewed_at is None
    reset_rows = sqlite_session.execute(
        select(AuditLog).where(AuditLog.plan_id == plan.id, AuditLog.change_type == "GRADE_RESET")
    ).scalars().all()
    assert len(reset_rows) == 1


def test_reset_all_grades_for_a_period(sqlite_session):
    dept = _dept()
    leader = _create_user(sqlite_session, "leader", dept)
    admin = _create_user(sqlite_session, "admin")
    first = _plan(sqlite_session, leader, dept, status="Achieved")
    _plan(sqlite_session, leader, dept, status="Not Achieved", resolution_type="dropped")
    submission_service.finalize_month(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=leader, now=JAN_OPEN
    )
    submission_service.grade_plan(sqlite_session, first.id, payload=GradeUpdate(score=90, status="Achieved"), actor=admin, now=JAN_OPEN)

    count = submission_service.reset_all_grades(
        sqlite_session, department_code=dept, month="Jan", year=2026, actor=admin, now=JAN_OPEN
    )
    assert count == 2
    assert all(p.quality_score is None for p in action_plan_service.list_plans(sqlite_session, department_code=dept))
