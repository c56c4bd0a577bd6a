from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.app.services.deadline_service import month_short_name, parse_month_name


STATUS_OPEN = "Open"
STATUS_ON_PROGRESS = "On Progress"
STATUS_BLOCKED = "Blocked"
STATUS_ACHIEVED = "Achieved"
STATUS_NOT_ACHIEVED = "Not Achieved"

PLAN_STATUSES = {STATUS_OPEN, STATUS_ON_PROGRESS, STATUS_BLOCKED, STATUS_ACHIEVED, STATUS_NOT_ACHIEVED}
TERMINAL_STATUSES = {STATUS_ACHIEVED, STATUS_NOT_ACHIEVED}
UNRESOLVED_STATUSES = {STATUS_OPEN, STATUS_ON_PROGRESS, STATUS_BLOCKED}

SUBMISSION_DRAFT = "draft"
SUBMISSION_SUBMITTED = "submitted"
SUBMISSION_STATUSES = {SUBMISSION_DRAFT, SUBMISSION_SUBMITTED}

UNLOCK_PENDING = "pending"
UNLOCK_APPROVED = "approved"
UNLOCK_REJECTED = "rejected"
UNLOCK_STATUSES = {UNLOCK_PENDING, UNLOCK_APPROVED, UNLOCK_REJECTED}

ATTENTION_STANDARD = "Standard"
ATTENTION_LEADER = "Leader"
ATTENTION_MANAGEMENT_BOD = "Management_BOD"
ATTENTION_LEVELS = [ATTENTION_STANDARD, ATTENTION_LEADER, ATTENTION_MANAGEMENT_BOD]

RESOLUTION_CARRIED_OVER = "carried_over"
RESOLUTION_DROPPED = "dropped"
RESOLUTION_TYPES = {RESOLUTION_CARRIED_OVER, RESOLUTION_DROPPED}

CARRY_OVER_NORMAL = "Normal"
CARRY_OVER_LATE_1 = "Late_Month_1"
CARRY_OVER_LATE_2 = "Late_Month_2"
CARRY_OVER_STATUSES = {CARRY_OVER_NORMAL, CARRY_OVER_LATE_1, CARRY_OVER_LATE_2}

VERDICT_REVISION = "revision"
VERDICT_CARRY_OVER = "carry_over"
VERDICT_FAILED = "failed"
VERDICTS = {VERDICT_REVISION, VERDICT_CARRY_OVER, VERDICT_FAILED}

ROLE_ADMIN = "admin"
ROLE_EXECUTIVE = "executive"
ROLE_LEADER = "leader"
ROLE_STAFF = "staff"
ROLES = {ROLE_ADMIN, ROLE_EXECUTIVE, ROLE_LEADER, ROLE_STAFF}

AUTO_GRADE_FEEDBACK = "System: Auto-graded (Not Achieved)"


def _strip_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class PlanNarrative(BaseModel):
    goal_strategy: Optional[str] = Field(default=None, max_length=4000)
    action_plan: Optional[str] = Field(default=None, max_length=4000)
    indicator: Optional[str] = Field(default=None, max_length=1000)
    pic: Optional[str] = Field(default=None, max_length=200)
    category: Optional[str] = Field(default=None, max_length=60)
    area_focus: Optional[str] = Field(default=None, max_length=200)
    report_format: Optional[str] = Field(default=None, max_length=120)


class PlanCreate(PlanNarrative):
    kind: Literal["create"] = "create"
    department_code: str = Field(..., min_length=1, max_length=40)
    company_id: Optional[str] = Field(default=None, max_length=36)
    month: str
    year: int = Field(..., ge=2000, le=2100)

    @field_validator("department_code")
    @classmethod
    def normalize_department(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("month")
    @classmethod
    def validate_month(cls, value: str) -> str:
        index = parse_month_name(value)
        if index < 0:
            raise ValueError("invalid month")
        return month_short_name(index)


class PlanFieldsUpdate(PlanNarrative):
    """Narrative/evidence fields a PIC or leader may edit while the plan is unlocked."""

    kind: Literal["fields"] = "fields"
    evidence: Optional[str] = Field(default=None, max_length=4000)
    outcome_link: Optional[str] = Field(default=None, max_length=2000)
    attachments: Optional[List[dict]] = None
    remark: Optional[str] = Field(default=None, max_length=4000)
    gap_category: Optional[str] = Field(default=None, max_length=120)
    gap_analysis: Optional[str] = Field(default=None, max_length=4000)
    specify_reason: Optional[str] = Field(default=None, max_length=4000)


class StatusUpdate(BaseModel):
    kind: Literal["status"] = "status"
    status: str
    blocker_reason: Optional[str] = Field(default=None, max_length=4000)
    blocker_category: Optional[str] = Field(default=None, max_length=120)
    attention_level: Optional[str] = None
    # What happens to a Not Achieved plan next month.
    follow_up: Optional[Literal["carry_over", "drop"]] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: str) -> str:
        if value not in PLAN_STATUSES:
            raise ValueError("invalid plan status")
        return value

    @model_validator(mode="after")
    def follow_up_needs_not_achieved(self) -> "StatusUpdate":
        if self.follow_up is not None and self.status != STATUS_NOT_ACHIEVED:
            raise ValueError("follow_up is only accepted with status Not Achieved")
        return self

    @field_validator("attention_level")
    @classmethod
    def validate_attention(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ATTENTION_LEVELS:
            raise ValueError("invalid attention level")
        return value


class BlockerReport(BaseModel):
    kind: Literal["blocker"] = "blocker"
    reason: str
    attention_level: str = ATTENTION_STANDARD
    blocker_category: Optional[str] = Field(default=None, max_length=120)

    @field_validator("attention_level")
    @classmethod
    def validate_attention(cls, value: str) -> str:
        if value not in ATTENTION_LEVELS:
            raise ValueError("invalid attention level")
        return value


class BlockerResolution(BaseModel):
    kind: Literal["blocker_resolution"] = "blocker_resolution"
    resolution_note: str


class GradeUpdate(BaseModel):
    """Administrator grading input. ``score=None`` with no verdict kicks the plan back to draft."""

    kind: Literal["grade"] = "grade"
    score: Optional[int] = Field(default=None, ge=0, le=100)
    status: Optional[str] = None
    verdict: Optional[str] = None
    revision_days: Optional[int] = Field(default=None, ge=1, le=90)
    feedback: Optional[str] = Field(default=None, max_length=4000)

    @field_validator("status")
    @classmethod
    def validate_status(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in TERMINAL_STATUSES:
            raise ValueError("grade status must be Achieved or Not Achieved")
        return value

    @field_validator("verdict")
    @classmethod
    def validate_verdict(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in VERDICTS:
            raise ValueError("invalid verdict")
        return value

    @field_validator("feedback")
    @classmethod
    def strip_feedback(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class UnlockRequest(BaseModel):
    kind: Literal["unlock_request"] = "unlock_request"
    reason: str = Field(..., max_length=4000)


class UnlockApproval(BaseModel):
    kind: Literal["unlock_approve"] = "unlock_approve"
    approved_until: Optional[datetime] = None


class UnlockRejection(BaseModel):
    kind: Literal["unlock_reject"] = "unlock_reject"
    reason: Optional[str] = Field(default=None, max_length=4000)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class UnlockRevocation(BaseModel):
    kind: Literal["unlock_revoke"] = "unlock_revoke"


UnlockDecision = Annotated[
    Union[UnlockApproval, UnlockRejection, UnlockRevocation],
    Field(discriminator="kind"),
]


class SoftDelete(BaseModel):
    kind: Literal["soft_delete"] = "soft_delete"
    reason: str = Field(..., max_length=1000)


class Resolution(BaseModel):
    plan_id: str
    action: Literal["carry_over", "drop"]


PlanUpdateIntent = Annotated[
    Union[
        PlanFieldsUpdate,
        StatusUpdate,
        BlockerReport,
        BlockerResolution,
        GradeUpdate,
        UnlockRequest,
        UnlockApproval,
        UnlockRejection,
        UnlockRevocation,
        SoftDelete,
    ],
    Field(discriminator="kind"),
]


def actor_id(actor) -> Optional[str]:
    return getattr(actor, "id", None) if actor is not None else None


def is_admin(actor) -> bool:
    return actor is not None and getattr(actor, "role", None) == ROLE_ADMIN
