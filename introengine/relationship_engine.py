"""
Relationship / Inference Engine
Turns discovered paths into persisted intro opportunities and keeps them in
step with the network:

  1. score every company against the ICP and persist icp_score
  2. build the network graph once; find the best path per matched target
  3. upsert one opportunity per (user, target, bridge contact)
  4. retire active intro opportunities whose path vanished or whose target
     fell below the ICP threshold (status -> lost, never deleted)

Running it twice on unchanged data changes nothing.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Set, Tuple

from introengine.config import PATH_DISCOVERY_WORKERS
from introengine.errors import NotFoundError
from introengine.graph_engine import NetworkGraph, build_network_graph
from introengine.icp_matcher import match_targets, score_company, validate_icp
from introengine.path_finder import contact_path, find_path, rank_paths
from introengine.status import (INTRO_TYPES, REASON_BELOW_THRESHOLD,
                                REASON_PATH_VANISHED, STATUS_LOST)
from introengine.thresholds import MIN_ICP_SCORE

logger = logging.getLogger(__name__)


def load_icp(user_id: int, store) -> Dict:
    icp = store.get_icp(user_id)
    if icp is None:
        raise NotFoundError(f"User {user_id} has no ICP definition; define one before inference")
    return validate_icp(icp)


def refresh_icp_scores(user_id: int, store, icp: Dict,
                       companies: Optional[List[Dict]] = None) -> List[Dict]:
    """Persist icp_score for every company; return the matches above the threshold."""
    companies = companies if companies is not None else store.get_companies(user_id)
    for company in companies:
        scored = score_company(icp, company)
        store.update_company_icp(user_id, company['id'], scored['icp_score'], scored['breakdown'])
        company['icp_score'] = scored['icp_score']
        company['icp_breakdown'] = scored['breakdown']
    return match_targets(icp, companies, min_score=MIN_ICP_SCORE)


def discover_paths(network: NetworkGraph, targets: Iterable[Dict],
                   max_workers: int = PATH_DISCOVERY_WORKERS) -> Tuple[Dict[int, Optional[Dict]], Set[int]]:
    """
    Run path discovery per target on a thread pool.
    Returns ({target_id: path or None}, {target_ids that raised}).
    """
    paths, failed = {}, set()
    targets = list(targets)
    if not targets:
        return paths, failed
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(targets)))) as pool:
        futures = {pool.submit(find_path, network, target): target for target in targets}
        for future in as_completed(futures):
            target = futures[future]
            try:
                paths[target['id']] = future.result()
            except Exception as e:
                logger.error(f"Path discovery failed for {target.get('name')} (id {target['id']}): {e}")
                failed.add(target['id'])
    return paths, failed


def _first_open_path(network: NetworkGraph, company: Dict, closed_keys: Set) -> Optional[Dict]:
    """Best path whose (target, contact) key the user has not closed, or None."""
    for path in rank_paths(network, company):
        if (company['id'], path['contact_id']) not in closed_keys:
            return path
    return None


def _retire(user_id: int, store, opp: Dict, reason: str) -> bool:
    try:
        store.set_status(user_id, opp['id'], STATUS_LOST, closed_reason=reason)
    except Exception as e:
        logger.error(f"Could not retire opportunity {opp['id']}: {e}")
        return False
    logger.info(f"Retired opportunity {opp['id']} (target {opp['target_id']}): {reason}")
    return True


def recalculate_intro_opportunities(user_id: int, store, drafter=None,
                                    max_workers: int = PATH_DISCOVERY_WORKERS) -> Dict[str, int]:
    """
    Re-derive the user's intro opportunities from the current network.
    Returns {'created', 'updated', 'retired', 'skipped', 'closed'}:
    'skipped' counts targets whose discovery or upsert failed, 'closed'
    counts targets whose every path runs through a key the user closed.
    """
    icp = load_icp(user_id, store)
    companies = store.get_companies(user_id)
    matches = refresh_icp_scores(user_id, store, icp, companies)
    by_id = {c['id']: c for c in companies}
    matched_ids = {m['company_id'] for m in matches}

    network = build_network_graph(store, user_id)
    paths, failed = discover_paths(network, [by_id[m['company_id']] for m in matches], max_workers)
    closed_keys = store.user_closed_keys(user_id)

    counts = {'created': 0, 'updated': 0, 'retired': 0, 'skipped': 0, 'closed': 0}

    # Matches are ranked, so creation order follows ICP fit
    for match in matches:
        target_id = match['company_id']
        path = paths.get(target_id)
        if target_id in failed or path is None:
            continue
        if (target_id, path['contact_id']) in closed_keys:
            # Fall back to the next contact the user has not closed
            path = _first_open_path(network, by_id[target_id], closed_keys)
            if path is None:
                logger.debug(f"Skipping target {target_id}: every path closed by user")
                counts['closed'] += 1
                continue
        try:
            opp_id, action = store.upsert_opportunity(
                (user_id, target_id, path['contact_id']),
                {'type': path['type'], 'path_reason': path['reason']})
        except Exception as e:
            logger.error(f"Upsert failed for target {target_id}: {e}")
            failed.add(target_id)
            continue

        if action == 'created':
            counts['created'] += 1
            if drafter is not None:
                _draft_intro(user_id, store, drafter, opp_id, by_id[target_id], path, icp)
        elif action == 'updated':
            counts['updated'] += 1

    # Reconcile the rest of the user's active intro opportunities
    for opp in store.list_active_opportunities(user_id, types=INTRO_TYPES):
        target_id = opp['target_id']
        if target_id in failed:
            continue
        if target_id not in matched_ids:
            if _retire(user_id, store, opp, REASON_BELOW_THRESHOLD):
                counts['retired'] += 1
            continue
        current = contact_path(network, by_id[target_id], opp['contact_id'])
        if current is None:
            if _retire(user_id, store, opp, REASON_PATH_VANISHED):
                counts['retired'] += 1
            continue
        try:
            _, action = store.upsert_opportunity(
                (user_id, target_id, opp['contact_id']),
                {'type': current['type'], 'path_reason': current['reason']})
        except Exception as e:
            logger.error(f"Refreshing opportunity {opp['id']} failed: {e}")
            continue
        if action == 'updated':
            counts['updated'] += 1

    counts['skipped'] = len(failed)
    logger.info(f"Inference for user {user_id}: {counts['created']} created, "
                f"{counts['updated']} updated, {counts['retired']} retired, "
                f"{counts['skipped']} skipped, {counts['closed']} closed by user")
    return counts


def _draft_intro(user_id: int, store, drafter, opp_id: int, company: Dict,
                 path: Dict, icp: Dict):
    try:
        contact = store.get_contact(user_id, path['contact_id'])
        message = drafter.draft_intro(contact, company, path, icp)
        if message:
            store.set_suggested_message(user_id, opp_id, message)
    except Exception as e:
        logger.warning(f"Intro draft for opportunity {opp_id} failed: {e}")
