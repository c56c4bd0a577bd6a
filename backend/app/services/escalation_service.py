from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from backend.app.domain.contracts import (
    ATTENTION_LEADER,
    ATTENTION_LEVELS,
    ATTENTION_MANAGEMENT_BOD,
    ATTENTION_STANDARD,
    ROLE_LEADER,
    STATUS_BLOCKED,
)
from backend.app.domain.errors import ValidationError
from backend.app.models import utcnow
from backend.app.services.deadline_service import as_utc

SEVERITY_NORMAL = "normal"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

# Roles that may not escalate to their own tier.
_SELF_ESCALATION_ROLES = {ROLE_LEADER, "dept_head"}


@dataclass(frozen=True)
class BlockerSummary:
    is_escalated: bool
    blocked_days: int
    severity: str
    label: str


def min_reason_length(attention_level: Optional[str]) -> int:
    return 20 if attention_level == ATTENTION_MANAGEMENT_BOD else 10


def is_valid_blocker_reason(reason: Optional[str], attention_level: Optional[str]) -> bool:
    if reason is None:
        return False
    return len(str(reason).strip()) >= min_reason_length(attention_level)


def validate_blocker_reason(reason: Optional[str], attention_level: Optional[str]) -> str:
    """Trimmed reason, or ValidationError when it is shorter than the tier requires."""
    if not is_valid_blocker_reason(reason, attention_level):
        required = min_reason_length(attention_level)
        raise ValidationError(
            f"Blocker reason must be at least {required} characters for {attention_level or ATTENTION_STANDARD} attention.",
            {"attention_level": attention_level, "min_length": required},
        )
    return str(reason).strip()


def is_escalated(plan: Any) -> bool:
    level = getattr(plan, "attention_level", None)
    return plan.status == STATUS_BLOCKED and bool(level) and level != ATTENTION_STANDARD


def blocker_reset_fields() -> Dict[str, Any]:
    return {
        "blocker_category": None,
        "attention_level": ATTENTION_STANDARD,
        "is_blocked": False,
        "blocker_reason": None,
    }


def apply_blocker_reset(plan: Any) -> None:
    for key, value in blocker_reset_fields().items():
        setattr(plan, key, value)


def attention_levels_for_role(role: Optional[str]) -> List[str]:
    if role in _SELF_ESCALATION_ROLES:
        return [level for level in ATTENTION_LEVELS if level != ATTENTION_LEADER]
    return list(ATTENTION_LEVELS)


def ensure_attention_level_allowed(role: Optional[str], attention_level: str) -> None:
    if attention_level not in attention_levels_for_role(role):
        raise ValidationError(
            f"Attention level {attention_level} is not available for role {role}.",
            {"attention_level": attention_level, "role": role},
        )


def blocked_days(plan: Any, now: Optional[datetime] = None) -> int:
    if plan.status != STATUS_BLOCKED:
        return 0
    updated_at = as_utc(getattr(plan, "updated_at", None))
    if updated_at is None:
        return 0
    now = as_utc(now) or utcnow()
    return max(0, (now - updated_at) // timedelta(days=1))


def blocked_severity(days: int) -> str:
    if days > 7:
        return SEVERITY_CRITICAL
    if days >= 4:
        return SEVERITY_WARNING
    return SEVERITY_NORMAL


def blocked_days_label(days: int) -> str:
    if days > 7:
        return f"{days}d+"
    return f"{days}d"


def summarize_blocker(plan: Any, now: Optional[datetime] = None) -> BlockerSummary:
    days = blocked_days(plan, now)
    return BlockerSummary(
        is_escalated=is_escalated(plan),
        blocked_days=days,
        severity=blocked_severity(days),
        label=blocked_days_label(days),
    )
