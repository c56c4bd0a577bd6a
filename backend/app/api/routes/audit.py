from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import ensure_department_access, get_current_user
from backend.app.db import get_db
from backend.app.models import User
from backend.app.services import action_plan_service, audit_service

router = APIRouter(prefix="/api/action-plans", tags=["audit"])


class AuditLogOut(BaseModel):
    id: str
    plan_id: str
    change_type: str
    actor: Optional[str] = None
    description: Optional[str] = None
    previous_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    created_at: datetime


class AuditLogPageOut(BaseModel):
    items: List[AuditLogOut]
    next_cursor: Optional[str] = None


@router.get("/{plan_id}/audit", response_model=AuditLogPageOut)
def list_plan_audit_events(
    plan_id: str,
    limit: int = Query(100, ge=1, le=500),
    cursor: Optional[str] = Query(None),
    change_type: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    plan = action_plan_service.require_plan(db, plan_id, include_deleted=True)
    ensure_department_access(user, plan.department_code)
    result = audit_service.list_audit_events(
        db,
        plan_id,
        limit=limit,
        cursor=cursor,
        change_type=change_type,
    )
    return AuditLogPageOut(
        items=[AuditLogOut(**item) for item in result["items"]],
        next_cursor=result["next_cursor"],
    )
