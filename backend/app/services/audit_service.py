from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from backend.app.models import ActionPlan, AuditLog

logger = logging.getLogger(__name__)

CREATED = "CREATED"
FULL_UPDATE = "FULL_UPDATE"
REMARK_UPDATE = "REMARK_UPDATE"
OUTCOME_UPDATE = "OUTCOME_UPDATE"
STATUS_UPDATE = "STATUS_UPDATE"
SUBMITTED = "SUBMITTED"
RECALLED = "RECALLED"
GRADED = "GRADED"
GRADE_RESET = "GRADE_RESET"
CARRY_OVER = "CARRY_OVER"
UNLOCK_REQUESTED = "UNLOCK_REQUESTED"
UNLOCK_APPROVED = "UNLOCK_APPROVED"
UNLOCK_REJECTED = "UNLOCK_REJECTED"
UNLOCK_REVOKED = "UNLOCK_REVOKED"
BLOCKER_REPORTED = "BLOCKER_REPORTED"
BLOCKER_RESOLVED = "BLOCKER_RESOLVED"
DELETED = "DELETED"
RESTORED = "RESTORED"

# These must land with the write they describe; everything else is best-effort.
REQUIRED_CHANGE_TYPES = {STATUS_UPDATE, GRADE_RESET}

NO_CHANGES_DESCRIPTION = "Updated record (No specific changes detected)"

# field -> (label, long text)
TRACKED_FIELDS: Dict[str, Tuple[str, bool]] = {
    "month": ("Month", False),
    "status": ("Status", False),
    "pic": ("PIC", False),
    "report_format": ("Report Format", False),
    "indicator": ("KPI", False),
    "goal_strategy": ("Strategy", True),
    "action_plan": ("Action Plan", True),
    "outcome_link": ("Outcome/URL", True),
    "remark": ("Remark", True),
}

SNAPSHOT_FIELDS = (
    "department_code",
    "month",
    "year",
    "goal_strategy",
    "action_plan",
    "indicator",
    "pic",
    "report_format",
    "evidence",
    "outcome_link",
    "remark",
    "status",
    "submission_status",
    "quality_score",
    "max_possible_score",
    "admin_feedback",
    "unlock_status",
    "approved_until",
    "temporary_unlock_expiry",
    "is_blocked",
    "blocker_reason",
    "blocker_category",
    "attention_level",
    "gap_category",
    "gap_analysis",
    "specify_reason",
    "origin_plan_id",
    "resolution_type",
    "carry_over_status",
    "deleted_at",
    "deletion_reason",
    "version",
)


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def plan_snapshot(plan: ActionPlan, fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    return {key: _json_safe(getattr(plan, key)) for key in (fields or SNAPSHOT_FIELDS)}


def truncate_text(value: Any, max_length: int = 30) -> str:
    if not value:
        return "Empty"
    text = str(value)
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def describe_changes(original: Dict[str, Any], updated: Dict[str, Any]) -> List[str]:
    changes: List[str] = []
    for key, (label, is_long) in TRACKED_FIELDS.items():
        old_value = original.get(key)
        new_value = updated.get(key)
        if (old_value or None) == (new_value or None):
            continue
        from_text = old_value if old_value else "Empty"
        to_text = new_value if new_value else "Empty"
        if is_long:
            from_text = truncate_text(from_text)
            to_text = truncate_text(to_text)
        changes.append(f"Changed {label} from '{from_text}' to '{to_text}'")
    if not changes:
        return [NO_CHANGES_DESCRIPTION]
    return changes


def classify_field_update(updates: Dict[str, Any]) -> str:
    if len(updates) == 1:
        if "remark" in updates:
            return REMARK_UPDATE
        if "outcome_link" in updates:
            return OUTCOME_UPDATE
    return FULL_UPDATE


def log_audit_event(
    db: Session,
    *,
    plan_id: str,
    change_type: str,
    actor: Optional[str] = None,
    description: Optional[str] = None,
    previous: Optional[Dict[str, Any]] = None,
    new: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    row = AuditLog(
        plan_id=plan_id,
        change_type=change_type,
        actor=actor,
        description=description,
        previous_value=previous,
        new_value=new,
    )
    db.add(row)
    db.flush()
    return row


def record_change(
    db: Session,
    *,
    plan_id: str,
    change_type: str,
    actor: Optional[str] = None,
    description: Optional[str] = None,
    previous: Optional[Dict[str, Any]] = None,
    new: Optional[Dict[str, Any]] = None,
) -> Optional[AuditLog]:
    """
    Append an audit row for a lifecycle write.

    Required change types are flushed with the write and any failure aborts it.
    Best-effort types are staged on the session and ride along with the
    commit; a failure building them is logged and dropped.
    """
    if change_type in REQUIRED_CHANGE_TYPES:
        return log_audit_event(
            db,
            plan_id=plan_id,
            change_type=change_type,
            actor=actor,
            description=description,
            previous=previous,
            new=new,
        )
    try:
        # Payloads must survive the JSON column.
        json.dumps(previous)
        json.dumps(new)
        row = AuditLog(
            plan_id=plan_id,
            change_type=change_type,
            actor=actor,
            description=description,
            previous_value=previous,
            new_value=new,
        )
        db.add(row)
        return row
    except (TypeError, ValueError):
        logger.warning("Dropping %s audit entry for plan %s", change_type, plan_id, exc_info=True)
        return None


def _encode_cursor(created_at: datetime, audit_id: str) -> str:
    return f"{created_at.isoformat()}|{audit_id}"


def _decode_cursor(cursor: str) -> Tuple[datetime, str]:
    try:
        created_at_raw, audit_id = cursor.split("|", 1)
        return datetime.fromisoformat(created_at_raw), audit_id
    except ValueError as exc:
        raise HTTPException(400, "invalid cursor") from exc


def list_audit_events(
    db: Session,
    plan_id: str,
    limit: int = 100,
    cursor: Optional[str] = None,
    change_type: Optional[str] = None,
) -> Dict[str, Any]:
    query = select(AuditLog).where(AuditLog.plan_id == plan_id)
    if change_type:
        query = query.where(AuditLog.change_type == change_type)
    if cursor:
        cursor_created_at, cursor_id = _decode_cursor(cursor)
        query = query.where(
            or_(
                AuditLog.created_at < cursor_created_at,
                and_(AuditLog.created_at == cursor_created_at, AuditLog.id < cursor_id),
            )
        )

    rows = (
        db.execute(
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit + 1)
        )
        .scalars()
        .all()
    )

    next_cursor = None
    if len(rows) > limit:
        last = rows[limit - 1]
        next_cursor = _encode_cursor(last.created_at, last.id)
        rows = rows[:limit]

    items = [
        {
            "id": row.id,
            "plan_id": row.plan_id,
            "change_type": row.change_type,
            "actor": row.actor,
            "description": row.description,
            "previous_value": row.previous_value,
            "new_value": row.new_value,
            "created_at": row.created_at,
        }
        for row in rows
    ]

    return {"items": items, "next_cursor": next_cursor}
