"""
Path Discovery Engine
Finds the best warm-introduction path from the user's network to a target
company. Works only on an in-memory NetworkGraph, so it is pure and safe to
run from several threads at once.

Tiers (first non-empty tier wins):
  DIRECT        contact currently works at the target            hops = 0
  SECOND_LEVEL  target appears in the contact's own past history   hops = 1
  INFERRED      contact's employer is similar to the target        hops = 2
                (only when the account allows inferred paths)
"""

import logging
from typing import Dict, List, Optional, Tuple

from introengine.graph_engine import (NetworkGraph, _node_key, company_keys,
                                      parse_date, same_company)
from introengine.icp_matcher import normalize_label
from introengine.status import TYPE_DIRECT, TYPE_INFERRED, TYPE_SECOND_LEVEL
from introengine.thresholds import INFERRED_MIN_SIMILARITY

logger = logging.getLogger(__name__)

TIER_HOPS = {TYPE_DIRECT: 0, TYPE_SECOND_LEVEL: 1, TYPE_INFERRED: 2}
TIER_ORDER = (TYPE_DIRECT, TYPE_SECOND_LEVEL, TYPE_INFERRED)


def _employment_edge(G: NetworkGraph, contact_node: str, company: Dict,
                     relationship: str) -> Optional[dict]:
    """Edge data when the contact has a works_at/worked_at edge into this company."""
    keys = set(company_keys(company.get('name'), company.get('domain')))
    for _, tgt, data in G.out_edges(contact_node):
        if data.get('relationship') != relationship or tgt not in keys:
            continue
        if same_company(company.get('name'), company.get('domain'),
                        data.get('company_name'), data.get('company_domain')):
            return data
    return None


def _employer_profile(G: NetworkGraph, contact_node: str) -> Dict:
    """Merged attributes of the contact's current employer node(s)."""
    profile = {}
    for _, tgt, data in G.out_edges(contact_node):
        if data.get('relationship') != 'works_at':
            continue
        profile.setdefault('name', data.get('company_name'))
        profile.setdefault('domain', data.get('company_domain'))
        for attr in ('industry', 'size_bucket', 'country'):
            if G.nodes.get(tgt, {}).get(attr) and not profile.get(attr):
                profile[attr] = G.nodes[tgt][attr]
    return profile


def inferred_similarity(G: NetworkGraph, contact_node: str, company: Dict) -> Tuple[int, List[str]]:
    """
    Similarity points between the contact's current employer and the target.
    Same industry is required (2); same size bucket (1); same country (1);
    the user's own work history covers the employer or the target's industry (1).
    """
    employer = _employer_profile(G, contact_node)
    if not employer:
        return 0, []
    if same_company(employer.get('name'), employer.get('domain'),
                    company.get('name'), company.get('domain')):
        return 0, []

    industry = normalize_label(company.get('industry'))
    if not industry or normalize_label(employer.get('industry')) != industry:
        return 0, []
    points, signals = 2, ["same industry"]

    bucket = normalize_label(company.get('size_bucket'))
    if bucket and normalize_label(employer.get('size_bucket')) == bucket:
        points += 1
        signals.append("same size")

    country = normalize_label(company.get('country'))
    if country and normalize_label(employer.get('country')) == country:
        points += 1
        signals.append("same country")

    for job in G.work_history:
        if same_company(job.get('company_name'), job.get('company_domain'),
                        employer.get('name'), employer.get('domain')) or \
                normalize_label(job.get('company_industry')) == industry:
            points += 1
            signals.append("referral pattern from your work history")
            break

    return points, signals


def _sort_key(G: NetworkGraph, contact_node: str):
    """Strength desc, most recent interaction, then contact creation order."""
    attrs = G.nodes[contact_node]
    last = parse_date(attrs.get('last_interaction_date'))
    return (-(attrs.get('strength') or 1),
            -(last.toordinal() if last else 0),
            str(attrs.get('created_at') or ""),
            attrs.get('entity_id') or 0)


def _classify_contact(G: NetworkGraph, contact_node: str, company: Dict) -> Optional[Tuple[str, str]]:
    """Highest tier this contact qualifies for, with a human-readable reason."""
    attrs = G.nodes[contact_node]
    name = attrs.get('name') or "Contact"
    target = company.get('name') or "the target"

    edge = _employment_edge(G, contact_node, company, 'works_at')
    if edge is not None:
        title = edge.get('title') or attrs.get('title')
        role = f" as {title}" if title else ""
        return TYPE_DIRECT, f"{name} currently works at {target}{role}"

    edge = _employment_edge(G, contact_node, company, 'worked_at')
    if edge is not None:
        title = f" ({edge['title']})" if edge.get('title') else ""
        return TYPE_SECOND_LEVEL, f"{name} previously worked at {target}{title}"

    if G.allow_inferred:
        points, signals = inferred_similarity(G, contact_node, company)
        if points >= INFERRED_MIN_SIMILARITY:
            employer = _employer_profile(G, contact_node).get('name') or "a similar company"
            return TYPE_INFERRED, (f"{name} works at {employer}, similar to {target}: "
                                   f"{', '.join(signals)}")
    return None


def _path_result(G: NetworkGraph, contact_node: str, opp_type: str, reason: str) -> Dict:
    attrs = G.nodes[contact_node]
    return {
        'type': opp_type,
        'contact_id': attrs['entity_id'],
        'hops': TIER_HOPS[opp_type],
        'strength': attrs.get('strength') or 1,
        'reason': reason,
    }


def rank_paths(network: NetworkGraph, company: Dict) -> List[Dict]:
    """
    Every contact that can introduce the user to the company, best first:
    tier order, then strength, recency and creation order.
    """
    candidates = []
    for node in network.contacts():
        tier = _classify_contact(network, node, company)
        if tier is None:
            continue
        candidates.append((TIER_ORDER.index(tier[0]), _sort_key(network, node),
                           _path_result(network, node, *tier)))
    candidates.sort(key=lambda c: (c[0], c[1]))
    return [c[2] for c in candidates]


def find_path(network: NetworkGraph, company: Dict) -> Optional[Dict]:
    """
    Best introduction path to the company, or None when only outbound is left.
    Returns {'type', 'contact_id', 'hops', 'strength', 'reason'}.
    """
    paths = rank_paths(network, company)
    if not paths:
        return None
    best = paths[0]
    logger.debug(f"Path to {company.get('name')}: {best['type']} via contact {best['contact_id']}")
    return best


def contact_path(network: NetworkGraph, company: Dict, contact_id: int) -> Optional[Dict]:
    """Path through one specific contact, or None (left, deleted, no longer similar)."""
    node = _node_key("contact", contact_id)
    if not network.has_node(node):
        return None
    tier = _classify_contact(network, node, company)
    if tier is None:
        return None
    return _path_result(network, node, *tier)


def contact_tier(network: NetworkGraph, company: Dict, contact_id: int) -> Optional[str]:
    """Tier the given contact still qualifies for, or None."""
    path = contact_path(network, company, contact_id)
    return path["type"] if path else None
