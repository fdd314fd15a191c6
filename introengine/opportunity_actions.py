"""
User-initiated opportunity actions. Unlike the batch stages these raise:
ValidationError for illegal moves, NotFoundError for rows the user does not own.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from introengine.errors import ValidationError
from introengine.status import (INTRO_TYPES, STATUS_INTRO_REQUESTED,
                                TERMINAL_STATUSES, days_in_status, is_stale,
                                normalize_status)
from introengine.thresholds import FOLLOWUP_STALE_DAYS

logger = logging.getLogger(__name__)


def request_intro(user_id: int, opportunity_id: int, store) -> Dict:
    """Mark that the user asked the bridge contact for an introduction."""
    opp = store.get_opportunity(user_id, opportunity_id)
    if opp['type'] not in INTRO_TYPES:
        raise ValidationError(
            f"Opportunity {opportunity_id} is {opp['type']}; only warm-intro opportunities "
            f"have a bridge contact to ask")
    updated = store.set_status(user_id, opportunity_id, STATUS_INTRO_REQUESTED)
    logger.info(f"Intro requested for opportunity {opportunity_id} (user {user_id})")
    return updated


def update_status(user_id: int, opportunity_id: int, status: str, store,
                  reason: Optional[str] = None) -> Dict:
    """
    Move an opportunity to a new status (legacy values accepted).
    reason is recorded as closed_reason when the move closes the opportunity.
    """
    new_status = normalize_status(status)
    if reason and new_status not in TERMINAL_STATUSES:
        raise ValidationError("A reason can only be given when closing an opportunity (won/lost)")
    updated = store.set_status(user_id, opportunity_id, new_status, closed_reason=reason)
    logger.info(f"Opportunity {opportunity_id} -> {updated['status']} (user {user_id})")
    return updated


def list_ranked_opportunities(user_id: int, store, include_closed: bool = False) -> List[Dict]:
    """Opportunities ordered by score_total descending; unscored ones last."""
    opps = store.list_opportunities(user_id, order_by_score=True)
    if not include_closed:
        opps = [o for o in opps if o['is_active']]
    return opps


def list_stale_opportunities(user_id: int, store, days: int = FOLLOWUP_STALE_DAYS,
                             now: Optional[datetime] = None) -> List[Dict]:
    """Open opportunities whose status has not moved for more than `days` days."""
    now = now or datetime.utcnow()
    stale = []
    for opp in store.list_active_opportunities(user_id):
        if is_stale(opp, days, now):
            opp['days_in_status'] = days_in_status(opp, now)
            stale.append(opp)
    stale.sort(key=lambda o: -(o['days_in_status'] or 0))
    return stale
