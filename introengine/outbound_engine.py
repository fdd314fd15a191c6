"""
Outbound Generation Engine
Creates one OUTBOUND opportunity (no bridge contact) for every ICP-matched
target that path discovery finds no warm path to, up to a per-run quota.
Targets the user already won are never pitched again. Reads the icp_score
values persisted by the inference stage.
"""

import logging
from typing import Dict, Optional

from introengine.graph_engine import build_network_graph
from introengine.icp_matcher import company_size, normalize_label
from introengine.path_finder import find_path
from introengine.status import (INTRO_TYPES, REASON_BELOW_THRESHOLD,
                                STATUS_LOST, STATUS_WON, TYPE_OUTBOUND)
from introengine.thresholds import MIN_ICP_SCORE, OUTBOUND_QUOTA_PER_RUN

logger = logging.getLogger(__name__)

SMALL_COMPANY_MAX = 50
TECH_MARKERS = ("tech", "saas", "software")
DEFAULT_TARGET_ROLE = "HR Manager / Operations Director"


def suggest_target_role(company: Dict, icp: Optional[Dict] = None) -> str:
    """Who to approach cold: founders at small shops, engineering leads at tech companies."""
    size = company_size(company)
    if size is not None and size <= SMALL_COMPANY_MAX:
        return "Founder / CEO"
    industry = normalize_label(company.get('industry'))
    if any(marker in industry for marker in TECH_MARKERS):
        return "CTO / VP Engineering"
    roles = (icp or {}).get('key_roles') or []
    return roles[0] if roles else DEFAULT_TARGET_ROLE


def auto_generate_outbound(user_id: int, store, quota: Optional[int] = None,
                           drafter=None) -> Dict[str, int]:
    """
    Returns {'created', 'deferred', 'retired'}. Existing active OUTBOUND
    opportunities are left untouched; those whose target dropped below the
    ICP threshold are retired. Targets with any discovered path or a won
    opportunity are not candidates.
    """
    quota = OUTBOUND_QUOTA_PER_RUN if quota is None else quota
    counts = {'created': 0, 'deferred': 0, 'retired': 0}

    companies = store.get_companies(user_id)
    active = store.list_active_opportunities(user_id)
    warm_targets = {o['target_id'] for o in active if o['type'] in INTRO_TYPES}
    outbound_targets = {o['target_id'] for o in active if o['type'] == TYPE_OUTBOUND}
    closed_keys = store.user_closed_keys(user_id)

    qualified = {c['id'] for c in companies
                 if c.get('icp_score') is not None and c['icp_score'] >= MIN_ICP_SCORE}

    for opp in active:
        if opp['type'] == TYPE_OUTBOUND and opp['target_id'] not in qualified:
            try:
                store.set_status(user_id, opp['id'], STATUS_LOST, closed_reason=REASON_BELOW_THRESHOLD)
                counts['retired'] += 1
            except Exception as e:
                logger.error(f"Could not retire outbound opportunity {opp['id']}: {e}")

    won_targets = {o['target_id'] for o in store.list_opportunities(user_id, status=STATUS_WON)}

    candidates = [c for c in companies
                  if c['id'] in qualified
                  and c['id'] not in warm_targets
                  and c['id'] not in outbound_targets
                  and c['id'] not in won_targets
                  and (c['id'], 0) not in closed_keys]
    if candidates:
        # A warm path the user closed still counts as a path
        network = build_network_graph(store, user_id)
        candidates = [c for c in candidates if find_path(network, c) is None]
    candidates.sort(key=lambda c: (-c['icp_score'], (c.get('name') or "").lower(), c['id']))

    icp = store.get_icp(user_id) if drafter is not None else None
    for company in candidates:
        if counts['created'] >= quota:
            counts['deferred'] += 1
            continue
        role = suggest_target_role(company, icp)
        try:
            opp_id, action = store.upsert_opportunity(
                (user_id, company['id'], None),
                {'type': TYPE_OUTBOUND,
                 'path_reason': f"ICP match ({company['icp_score']:.0f}) with no warm path; "
                                f"approach the {role}"})
        except Exception as e:
            logger.error(f"Outbound upsert failed for {company.get('name')}: {e}")
            continue
        if action != 'created':
            continue
        counts['created'] += 1
        if drafter is not None:
            try:
                message = drafter.draft_outbound(company, role, icp)
                if message:
                    store.set_suggested_message(user_id, opp_id, message)
            except Exception as e:
                logger.warning(f"Outbound draft for opportunity {opp_id} failed: {e}")

    logger.info(f"Outbound for user {user_id}: {counts['created']} created, "
                f"{counts['deferred']} deferred, {counts['retired']} retired")
    return counts
