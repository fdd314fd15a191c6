"""
ICP Matcher
Scores target companies against a user's Ideal Customer Profile.

Each criterion is normalized to 0-100 and combined with ICP_WEIGHTS:
    industry 0.35 | size 0.25 | technology 0.15 | location 0.15 | digital maturity 0.10

A criterion the ICP leaves open scores 100. A company attribute that is
unknown scores UNKNOWN_CRITERION_SCORE, except industry: an unknown industry
against a specified industry list scores 0.
"""

import re
from typing import Dict, List, Optional

from introengine.errors import ValidationError
from introengine.thresholds import (ICP_MATCH_THRESHOLD, ICP_PARTIAL_THRESHOLD,
                                    ICP_WEIGHTS, MATURITY_LEVELS, MIN_ICP_SCORE,
                                    SIZE_DECAY_CUTOFF, UNKNOWN_CRITERION_SCORE)


def normalize_label(value) -> str:
    """Case- and separator-insensitive form of a label ("Fin-Tech" -> "fin tech")."""
    return re.sub(r"[\s_\-]+", " ", str(value or "").strip().lower())


def _norm_set(values) -> set:
    return {normalize_label(v) for v in (values or []) if normalize_label(v)}


def parse_size_bucket(bucket: Optional[str]) -> Optional[float]:
    """
    Representative headcount for a size bucket.
    '51-200' -> 125.5, '1,000+' -> 1000, '500' -> 500, 'unknown' -> None
    """
    if not bucket:
        return None
    text = str(bucket).replace(",", "")
    m = re.search(r"(\d+)\s*(?:-|–|to)\s*(\d+)", text)
    if m:
        low, high = float(m.group(1)), float(m.group(2))
        return (low + high) / 2
    m = re.search(r"(\d+)", text)
    if m:
        return float(m.group(1))
    return None


def company_size(company: Dict) -> Optional[float]:
    """employee_count, or the midpoint of size_bucket when the count is missing."""
    count = company.get('employee_count')
    if count is not None:
        return float(count)
    return parse_size_bucket(company.get('size_bucket'))


# =============================================================================
# VALIDATION
# =============================================================================

def validate_icp(icp: Optional[Dict]) -> Dict:
    """Raise ValidationError for a malformed ICP; return it unchanged otherwise."""
    if not isinstance(icp, dict):
        raise ValidationError("ICP definition is missing")

    size_min = icp.get('company_size_min')
    size_max = icp.get('company_size_max')
    for label, bound in (('company_size_min', size_min), ('company_size_max', size_max)):
        if bound is None:
            continue
        if not isinstance(bound, (int, float)) or isinstance(bound, bool):
            raise ValidationError(f"{label} must be a number, got {bound!r}")
        if bound < 0:
            raise ValidationError(f"{label} cannot be negative")
    if size_min is not None and size_max is not None and size_min > size_max:
        raise ValidationError(
            f"company_size_min ({size_min}) is greater than company_size_max ({size_max})")

    maturity = (icp.get('digital_maturity') or 'any').lower()
    if maturity != 'any' and maturity not in MATURITY_LEVELS:
        raise ValidationError(
            f"digital_maturity must be 'any' or one of {', '.join(MATURITY_LEVELS)}")

    has_criteria = any([
        _norm_set(icp.get('target_industries')),
        _norm_set(icp.get('target_technologies')),
        _norm_set(icp.get('target_locations')),
        size_min is not None,
        size_max is not None,
        maturity != 'any',
    ])
    if not has_criteria:
        raise ValidationError("ICP defines no matching criteria")
    return icp


# =============================================================================
# CRITERION SCORES (0-100)
# =============================================================================

def score_industry(icp: Dict, company: Dict) -> float:
    targets = _norm_set(icp.get('target_industries'))
    if not targets:
        return 100.0
    industry = normalize_label(company.get('industry'))
    if not industry:
        return 0.0
    return 100.0 if industry in targets else 0.0


def score_size(icp: Dict, company: Dict) -> float:
    """100 inside [min, max]; linear decay by relative distance outside."""
    size_min = icp.get('company_size_min')
    size_max = icp.get('company_size_max')
    if size_min is None and size_max is None:
        return 100.0
    size = company_size(company)
    if size is None:
        return UNKNOWN_CRITERION_SCORE

    if size_max is not None and size > size_max:
        distance = (size - size_max) / size_max if size_max > 0 else SIZE_DECAY_CUTOFF
    elif size_min is not None and size < size_min:
        distance = (size_min - size) / size_min if size_min > 0 else 0.0
    else:
        return 100.0
    return max(0.0, 100.0 * (1 - distance / SIZE_DECAY_CUTOFF))


def score_technology(icp: Dict, company: Dict) -> float:
    wanted = _norm_set(icp.get('target_technologies'))
    if not wanted:
        return 100.0
    have = _norm_set(company.get('technologies'))
    if not have:
        return UNKNOWN_CRITERION_SCORE
    return len(wanted & have) / len(wanted) * 100.0


def score_location(icp: Dict, company: Dict) -> float:
    locations = _norm_set(icp.get('target_locations'))
    if not locations:
        return 100.0
    country = normalize_label(company.get('country'))
    if not country:
        return UNKNOWN_CRITERION_SCORE
    return 100.0 if country in locations else 0.0


def score_maturity(icp: Dict, company: Dict) -> float:
    wanted = (icp.get('digital_maturity') or 'any').lower()
    if wanted == 'any':
        return 100.0
    have = (company.get('digital_maturity') or '').lower()
    if have not in MATURITY_LEVELS:
        return UNKNOWN_CRITERION_SCORE
    gap = abs(MATURITY_LEVELS.index(wanted) - MATURITY_LEVELS.index(have))
    if gap == 0:
        return 100.0
    return 50.0 if gap == 1 else 0.0


CRITERIA = {
    'industry': score_industry,
    'size': score_size,
    'technology': score_technology,
    'location': score_location,
    'digital_maturity': score_maturity,
}


def classify_match(score: float) -> str:
    if score >= ICP_MATCH_THRESHOLD:
        return "icp_match"
    if score >= ICP_PARTIAL_THRESHOLD:
        return "icp_partial"
    return "no_icp"


def score_company(icp: Dict, company: Dict) -> Dict:
    """Weighted ICP score for one company: {'icp_score', 'breakdown', 'match_type'}."""
    breakdown = {name: round(fn(icp, company), 2) for name, fn in CRITERIA.items()}
    total = sum(breakdown[name] * ICP_WEIGHTS[name] for name in CRITERIA)
    total = round(min(max(total, 0.0), 100.0), 2)
    return {'icp_score': total, 'breakdown': breakdown, 'match_type': classify_match(total)}


def match_targets(icp: Dict, companies: List[Dict],
                  min_score: float = MIN_ICP_SCORE) -> List[Dict]:
    """
    Rank companies against the ICP. Companies scoring below min_score are
    dropped. Order: score desc, name asc (case-insensitive), id asc.
    """
    validate_icp(icp)
    results = []
    for company in companies:
        scored = score_company(icp, company)
        if scored['icp_score'] < min_score:
            continue
        results.append({
            'company_id': company['id'],
            'name': company.get('name') or "",
            'icp_score': scored['icp_score'],
            'breakdown': scored['breakdown'],
            'match_type': scored['match_type'],
        })

    results.sort(key=lambda r: (-r['icp_score'], r['name'].lower(), r['company_id']))
    for rank, item in enumerate(results, start=1):
        item['rank'] = rank
    return results
