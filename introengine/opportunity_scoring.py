"""
Opportunity Scoring Engine for IntroEngine
Scores each opportunity on four independent 0-100 dimensions and combines
them into a priority total:

    industry_fit    ICP match of the target (path independent)
    buying_signal   decayed company signals (funding, hiring, expansion...)
    intro_strength  path type, relationship strength and recency
    lead_potential  company size and seniority of the person reached

score_opportunity() is pure: every time-dependent input is measured against
context['as_of'], so the same inputs always give the same scores.
"""

import logging
import math
import re
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional

from introengine.enrichment import enrich_companies
from introengine.graph_engine import parse_date
from introengine.icp_matcher import company_size, score_company
from introengine.status import TYPE_DIRECT, TYPE_OUTBOUND
from introengine.thresholds import (BUYING_SIGNAL_NEUTRAL, HALF_LIFE_FUNDING,
                                    HALF_LIFE_HIRING, HALF_LIFE_RELATIONSHIP,
                                    ICP_WEIGHTS, INTRO_STRENGTH_BASE,
                                    LEAD_POTENTIAL_WEIGHTS, MIN_RECENCY_FACTOR,
                                    SCORE_WEIGHTS, STRENGTH_STEP_POINTS)

logger = logging.getLogger(__name__)


# =============================================================================
# DECAY FUNCTIONS
# =============================================================================

def days_since(date_str, as_of: date) -> int:
    """Days between a date (string or date) and as_of. Unknown dates are very old."""
    parsed = parse_date(date_str)
    if parsed is None:
        return 9999
    return (as_of - parsed).days


def decay_factor(days: int, half_life_days: int) -> float:
    """
    Exponential decay factor.
    Returns 1.0 for today (or the future), 0.5 at half-life, approaches 0 over time.
    """
    if days <= 0:
        return 1.0
    lambda_rate = 0.693 / half_life_days  # ln(2) / half_life
    return math.exp(-lambda_rate * days)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


# =============================================================================
# INDUSTRY FIT
# =============================================================================

def score_industry_fit(company: Dict, icp: Optional[Dict] = None) -> float:
    """ICP match recomputed from the ICP (or the stored breakdown when no ICP is given)."""
    if icp:
        return score_company(icp, company)['icp_score']
    breakdown = company.get('icp_breakdown')
    if isinstance(breakdown, dict) and breakdown:
        return sum(breakdown.get(k, 0.0) * w for k, w in ICP_WEIGHTS.items())
    return float(company.get('icp_score') or 0.0)


# =============================================================================
# BUYING SIGNAL
# =============================================================================

SIGNAL_TYPE_WEIGHTS = {
    'funding': 1.0,
    'leadership_hire': 1.0,
    'expansion': 0.9,
    'new_office': 0.9,
    'hiring_surge': 0.8,
    'job_posting': 0.4,
    'press_announcement': 0.3,
    'layoffs': 0.0,
}
RELEVANCE_WEIGHTS = {'high': 1.0, 'medium': 0.5, 'low': 0.2}


def score_buying_signal(signals: Optional[List[Dict]], as_of: date) -> float:
    """
    Decayed, type- and relevance-weighted sum of company signals, capped at 100.
    Funding decays with a 6-month half-life and counts double; everything else
    uses the 3-month hiring half-life. No signal data at all is neutral.
    """
    if not signals:
        return BUYING_SIGNAL_NEUTRAL

    total = 0.0
    for signal in signals:
        signal_type = (signal.get('signal_type') or '').lower()
        days = days_since(signal.get('signal_date'), as_of)
        if signal_type == 'funding':
            decay = decay_factor(days, HALF_LIFE_FUNDING)
            base = 100.0
        else:
            decay = decay_factor(days, HALF_LIFE_HIRING)
            base = 50.0
        rel_weight = RELEVANCE_WEIGHTS.get(signal.get('relevance'), 0.3)
        type_weight = SIGNAL_TYPE_WEIGHTS.get(signal_type, 0.3)
        total += decay * rel_weight * type_weight * base

    return min(total, 100.0)


# =============================================================================
# INTRO STRENGTH
# =============================================================================

def score_intro_strength(opp_type: str, connection: Optional[Dict], as_of: date) -> float:
    """
    Base by path type, adjusted by relationship strength (1-5) and scaled by a
    recency factor in [MIN_RECENCY_FACTOR, 1.0]. OUTBOUND is fixed.
    """
    base = INTRO_STRENGTH_BASE[opp_type]
    if opp_type == TYPE_OUTBOUND or not connection:
        return base

    strength = connection.get('relationship_strength') or 3
    score = base + (strength - 3) * STRENGTH_STEP_POINTS

    last = connection.get('last_interaction_date')
    if last:
        decay = decay_factor(days_since(last, as_of), HALF_LIFE_RELATIONSHIP)
    else:
        decay = 0.0
    recency = MIN_RECENCY_FACTOR + (1 - MIN_RECENCY_FACTOR) * decay
    return _clamp(score * recency)


# =============================================================================
# LEAD POTENTIAL
# =============================================================================

ROLE_LEVEL_SCORES = {
    'c_suite': 100.0,
    'decision_maker': 80.0,
    'influencer': 50.0,
    'team': 30.0,
}

_ROLE_PATTERNS = (
    ('c_suite', r"\b(ceo|cto|cfo|coo|cro|cmo|cio|chief|founder|co-founder|owner|president|managing partner)\b"),
    ('decision_maker', r"\b(vp|vice president|svp|evp|head of|director|partner|general manager)\b"),
    ('influencer', r"\b(manager|lead|principal|senior|architect)\b"),
)


def classify_role_level(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    text = title.lower()
    for level, pattern in _ROLE_PATTERNS:
        if re.search(pattern, text):
            return level
    return 'team'


def score_seniority(titles: List[str]) -> float:
    """Best role level among the titles; unknown is in between influencer and team."""
    levels = [classify_role_level(t) for t in titles if t]
    scores = [ROLE_LEVEL_SCORES[lv] for lv in levels if lv]
    return max(scores) if scores else 40.0


def score_company_size(company: Dict) -> float:
    size = company_size(company)
    if size is None:
        return 50.0
    if size <= 10:
        return 30.0
    if size <= 50:
        return 50.0
    if size <= 200:
        return 70.0
    if size <= 1000:
        return 85.0
    return 100.0


def score_lead_potential(opp_type: str, company: Dict, contact: Optional[Dict],
                         icp: Optional[Dict]) -> float:
    """Seniority comes from the contact for DIRECT paths, else from the ICP key roles."""
    if opp_type == TYPE_DIRECT and contact and contact.get('current_title'):
        titles = [contact['current_title']]
    else:
        titles = list((icp or {}).get('key_roles') or [])
    return (LEAD_POTENTIAL_WEIGHTS['size'] * score_company_size(company)
            + LEAD_POTENTIAL_WEIGHTS['seniority'] * score_seniority(titles))


# =============================================================================
# COMPOSITE
# =============================================================================

def score_opportunity(opportunity: Dict, context: Dict) -> Dict:
    """
    Score one opportunity.

    context keys: company (required), icp, signals, contact, connection,
    as_of (date; defaults to today).
    Returns {'industry_fit', 'buying_signal', 'intro_strength',
             'lead_potential', 'total'}.
    """
    as_of = context.get('as_of') or date.today()
    company = context['company']
    icp = context.get('icp')
    opp_type = opportunity['type']

    scores = {
        'industry_fit': _clamp(score_industry_fit(company, icp)),
        'buying_signal': _clamp(score_buying_signal(context.get('signals'), as_of)),
        'intro_strength': _clamp(score_intro_strength(opp_type, context.get('connection'), as_of)),
        'lead_potential': _clamp(score_lead_potential(opp_type, company, context.get('contact'), icp)),
    }
    scores = {k: round(v, 2) for k, v in scores.items()}
    total = sum(scores[k] * SCORE_WEIGHTS[k] for k in SCORE_WEIGHTS)
    scores['total'] = int(round(_clamp(total)))
    return scores


def score_all_opportunities(user_id: int, store, as_of: Optional[date] = None,
                            enrichment=None) -> Dict[str, int]:
    """
    Score every active opportunity of the user. Writes only the score
    columns; a failure on one opportunity is logged and the rest continue.
    """
    as_of = as_of or date.today()
    if enrichment is not None:
        enrich_companies(user_id, store, enrichment)

    icp = store.get_icp(user_id)
    companies = {c['id']: c for c in store.get_companies(user_id)}
    contacts = {c['id']: c for c in store.get_contacts(user_id, include_deleted=True)}
    connections = {c['contact_id']: c for c in store.get_connections(user_id)}
    signals = defaultdict(list)
    for signal in store.get_company_signals(user_id):
        signals[signal['company_id']].append(signal)

    counts = {'scored': 0, 'failed': 0}
    for opp in store.list_active_opportunities(user_id):
        try:
            context = {
                'as_of': as_of,
                'company': companies[opp['target_id']],
                'icp': icp,
                'signals': signals.get(opp['target_id']),
                'contact': contacts.get(opp['contact_id']),
                'connection': connections.get(opp['contact_id']),
            }
            store.update_scores(user_id, opp['id'], score_opportunity(opp, context))
            counts['scored'] += 1
        except Exception as e:
            logger.error(f"Scoring opportunity {opp['id']} failed: {e}")
            counts['failed'] += 1

    logger.info(f"Scored {counts['scored']} opportunities for user {user_id} "
                f"({counts['failed']} failed)")
    return counts
