"""
Follow-up / Advisor Engine
Drafts nudges for opportunities that have sat in the same status for too
long. Runs on its own schedule, separate from the inference pipeline, and
never changes an opportunity's status.

    bridge    intro requested, waiting on the bridge contact
    prospect  in conversation with the target (contacted, meeting, demo)
    outbound  cold outreach without a reply
"""

import json
import logging
from datetime import datetime
from typing import Dict, Optional

from introengine.errors import ServiceError, ValidationError
from introengine.status import (INTRO_TYPES, STATUS_CONTACTED,
                                STATUS_DEMO_SCHEDULED, STATUS_INTRO_REQUESTED,
                                STATUS_MEETING_BOOKED, STATUS_NEW,
                                STATUS_SUGGESTED, TYPE_OUTBOUND,
                                days_in_status, is_stale, normalize_status)
from introengine.thresholds import FOLLOWUP_STALE_DAYS

logger = logging.getLogger(__name__)

FOLLOWUP_SYSTEM = ("You write brief, polite follow-up messages for a B2B seller. Reply as "
                   "{\"followups\": {\"bridge_contact\": \"...\", \"prospect\": \"...\", "
                   "\"outbound\": \"...\"}} filling only the requested kind.")

_REPLY_KEYS = {'bridge': 'bridge_contact', 'prospect': 'prospect', 'outbound': 'outbound'}


def followup_type_for(opportunity: Dict) -> Optional[str]:
    """Which kind of follow-up an opportunity needs, or None."""
    try:
        status = normalize_status(opportunity['status'])
    except ValidationError:
        logger.warning(f"Opportunity {opportunity.get('id')} has unknown status {opportunity['status']!r}")
        return None
    if opportunity['type'] == TYPE_OUTBOUND:
        if status in (STATUS_SUGGESTED, STATUS_NEW, STATUS_CONTACTED):
            return 'outbound'
        return None
    if opportunity['type'] in INTRO_TYPES:
        if status == STATUS_INTRO_REQUESTED:
            return 'bridge'
        if status in (STATUS_CONTACTED, STATUS_MEETING_BOOKED, STATUS_DEMO_SCHEDULED):
            return 'prospect'
    return None


def _extract_message(reply: Dict, followup_type: str) -> str:
    followups = reply.get('followups')
    message = None
    if isinstance(followups, dict):
        message = followups.get(_REPLY_KEYS[followup_type])
    if message is None:
        message = reply.get('message')
    return message.strip() if isinstance(message, str) else ""


def generate_follow_ups(opportunity: Dict, days_waiting: int, completion,
                        context: Optional[Dict] = None) -> Optional[Dict]:
    """
    Draft a follow-up for one opportunity.
    Returns {'opportunity_id', 'followup_type', 'message'}; the message is
    empty when the completion fails or replies with something unusable.
    Returns None when the opportunity's type/status needs no follow-up.
    """
    followup_type = followup_type_for(opportunity)
    if followup_type is None:
        return None
    draft = {'opportunity_id': opportunity['id'], 'followup_type': followup_type, 'message': ""}

    context = context or {}
    payload = {
        'followup_type': followup_type,
        'days_without_activity': days_waiting,
        'opportunity': {'type': opportunity['type'], 'status': opportunity['status'],
                        'path': opportunity.get('path_reason')},
        'company': {k: (context.get('company') or {}).get(k)
                    for k in ('name', 'industry', 'size_bucket')},
    }
    bridge = context.get('contact')
    if bridge and followup_type == 'bridge':
        payload['bridge_contact'] = {'name': bridge.get('name'), 'title': bridge.get('current_title')}

    try:
        reply = completion.complete(FOLLOWUP_SYSTEM, json.dumps(payload, default=str))
    except ServiceError as e:
        logger.warning(f"Follow-up for opportunity {opportunity['id']} failed: {e}")
        return draft
    except Exception as e:
        logger.error(f"Follow-up for opportunity {opportunity['id']} raised unexpectedly: {e}")
        return draft

    if not isinstance(reply, dict):
        logger.warning(f"Follow-up for opportunity {opportunity['id']}: malformed reply")
        return draft
    draft['message'] = _extract_message(reply, followup_type)
    return draft


def generate_follow_ups_for_account(user_id: int, store, completion,
                                    days: Optional[int] = None,
                                    now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Draft follow-ups for every stale open opportunity of the user and persist
    the non-empty ones. Returns {'checked', 'drafted', 'empty'}.
    """
    days = FOLLOWUP_STALE_DAYS if days is None else days
    now = now or datetime.utcnow()
    counts = {'checked': 0, 'drafted': 0, 'empty': 0}

    companies = {c['id']: c for c in store.get_companies(user_id)}
    contacts = {c['id']: c for c in store.get_contacts(user_id, include_deleted=True)}

    for opp in store.list_active_opportunities(user_id):
        if not is_stale(opp, days, now) or followup_type_for(opp) is None:
            continue
        counts['checked'] += 1
        waiting = days_in_status(opp, now) or days
        draft = generate_follow_ups(opp, waiting, completion, {
            'company': companies.get(opp['target_id']),
            'contact': contacts.get(opp['contact_id']),
        })
        if not draft or not draft['message']:
            counts['empty'] += 1
            continue
        try:
            store.add_follow_up_draft(user_id, opp['id'], draft['followup_type'],
                                      draft['message'], waiting)
            counts['drafted'] += 1
        except Exception as e:
            logger.error(f"Saving follow-up for opportunity {opp['id']} failed: {e}")
            counts['empty'] += 1

    logger.info(f"Follow-ups for user {user_id}: {counts['checked']} stale, "
                f"{counts['drafted']} drafted, {counts['empty']} empty")
    return counts
