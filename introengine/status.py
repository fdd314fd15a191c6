"""
Opportunity types and the canonical status lifecycle.

    suggested → new → contacted → intro_requested → meeting_booked
              → demo_scheduled → won | lost

won and lost are terminal. Older rows may still carry the narrower legacy
set (new | contacted | meeting_booked | closed) or 'in_progress'; those are
mapped onto the canonical values by normalize_status().
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from introengine.errors import ValidationError

# Opportunity types, strongest path first
TYPE_DIRECT = "DIRECT"
TYPE_SECOND_LEVEL = "SECOND_LEVEL"
TYPE_INFERRED = "INFERRED"
TYPE_OUTBOUND = "OUTBOUND"

INTRO_TYPES = (TYPE_DIRECT, TYPE_SECOND_LEVEL, TYPE_INFERRED)
OPPORTUNITY_TYPES = INTRO_TYPES + (TYPE_OUTBOUND,)

STATUS_SUGGESTED = "suggested"
STATUS_NEW = "new"
STATUS_CONTACTED = "contacted"
STATUS_INTRO_REQUESTED = "intro_requested"
STATUS_MEETING_BOOKED = "meeting_booked"
STATUS_DEMO_SCHEDULED = "demo_scheduled"
STATUS_WON = "won"
STATUS_LOST = "lost"

# Pipeline order for the non-terminal states
PIPELINE_ORDER = (
    STATUS_SUGGESTED,
    STATUS_NEW,
    STATUS_CONTACTED,
    STATUS_INTRO_REQUESTED,
    STATUS_MEETING_BOOKED,
    STATUS_DEMO_SCHEDULED,
)
TERMINAL_STATUSES = (STATUS_WON, STATUS_LOST)
CANONICAL_STATUSES = PIPELINE_ORDER + TERMINAL_STATUSES

LEGACY_STATUS_MAP = {
    'in_progress': STATUS_CONTACTED,
    'closed': STATUS_LOST,
}

# closed_reason values written by the pipeline
REASON_PATH_VANISHED = "path_vanished"
REASON_BELOW_THRESHOLD = "below_icp_threshold"


def normalize_status(status: str) -> str:
    """Map a stored or user-supplied status onto the canonical set."""
    value = (status or "").strip().lower()
    value = LEGACY_STATUS_MAP.get(value, value)
    if value not in CANONICAL_STATUSES:
        raise ValidationError(
            f"Unknown status '{status}'. Expected one of: {', '.join(CANONICAL_STATUSES)}")
    return value


def normalize_type(opp_type: str) -> str:
    value = (opp_type or "").strip().upper()
    if value not in OPPORTUNITY_TYPES:
        raise ValidationError(
            f"Unknown opportunity type '{opp_type}'. Expected one of: {', '.join(OPPORTUNITY_TYPES)}")
    return value


def is_terminal(status: str) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES


def can_transition(current: str, new: str) -> bool:
    """
    Forward moves along the pipeline (skipping allowed) and closing from any
    open state. Nothing leaves won/lost and nothing moves backwards.
    """
    current = normalize_status(current)
    new = normalize_status(new)
    if current in TERMINAL_STATUSES:
        return False
    if new in TERMINAL_STATUSES:
        return True
    return PIPELINE_ORDER.index(new) > PIPELINE_ORDER.index(current)


def check_transition(current: str, new: str) -> str:
    """Return the canonical target status or raise ValidationError."""
    if not can_transition(current, new):
        raise ValidationError(
            f"Cannot move opportunity from '{normalize_status(current)}' "
            f"to '{normalize_status(new)}'")
    return normalize_status(new)


def check_contact_for_type(opp_type: str, contact_id: Optional[int]) -> str:
    """contact_id is required for intro types and forbidden for OUTBOUND."""
    opp_type = normalize_type(opp_type)
    if opp_type == TYPE_OUTBOUND and contact_id is not None:
        raise ValidationError("OUTBOUND opportunities cannot reference a contact")
    if opp_type in INTRO_TYPES and contact_id is None:
        raise ValidationError(f"{opp_type} opportunities require a bridge contact")
    return opp_type


def _parse_ts(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).replace("T", " ").split(".")[0]
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(text[:19] if fmt.endswith("%S") else text[:10], fmt)
        except ValueError:
            continue
    return None


def days_in_status(opportunity: Dict, now: Optional[datetime] = None) -> Optional[int]:
    """Whole days since the last status change (falls back to created_at)."""
    changed = _parse_ts(opportunity.get('status_changed_at')) or _parse_ts(opportunity.get('created_at'))
    if changed is None:
        return None
    now = now or datetime.utcnow()
    return max((now - changed).days, 0)


def is_stale(opportunity: Dict, days: int, now: Optional[datetime] = None) -> bool:
    """Open opportunity whose status has not changed for more than `days` days."""
    if is_terminal(opportunity['status']):
        return False
    changed = _parse_ts(opportunity.get('status_changed_at')) or _parse_ts(opportunity.get('created_at'))
    if changed is None:
        return False
    now = now or datetime.utcnow()
    return now - changed > timedelta(days=days)
