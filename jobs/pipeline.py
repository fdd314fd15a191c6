"""
Pipeline runner for IntroEngine
Runs the per-account stages (enrichment, inference, outbound, scoring),
records every stage run in pipeline_runs and posts a summary to Discord.

Usage:
    python -m jobs.pipeline                  # every active account
    python -m jobs.pipeline --user 3         # one account
    python -m jobs.pipeline --stage followup # follow-up drafts only
    python -m jobs.pipeline --stage advisor  # weekly advisor reports
"""

import argparse
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from datetime import date, datetime
from typing import Callable, Dict, Optional

import requests

from introengine.completion import AnthropicCompletionService
from introengine.config import (ACCOUNT_LOCK_TTL_MINUTES, ANTHROPIC_API_KEY,
                                DISCORD_WEBHOOK_URL, LOG_FORMAT, LOG_LEVEL,
                                PIPELINE_MAX_WORKERS)
from introengine.drafting import OutreachDrafter
from introengine.enrichment import CompletionEnrichmentSource, enrich_companies
from introengine.errors import ConflictError
from introengine.followup_engine import generate_follow_ups_for_account
from introengine.network_store import NetworkStore
from introengine.opportunity_scoring import score_all_opportunities
from introengine.outbound_engine import auto_generate_outbound
from introengine.relationship_engine import recalculate_intro_opportunities
from introengine.weekly_advisor import generate_weekly_summary

logger = logging.getLogger(__name__)


@contextmanager
def account_lock(store: NetworkStore, user_id: int, job: str,
                 ttl_minutes: int = ACCOUNT_LOCK_TTL_MINUTES):
    """Hold the account lock for the duration of the block; ConflictError if taken."""
    if not store.acquire_account_lock(user_id, job, ttl_minutes):
        raise ConflictError(f"A run is already in progress for user {user_id}; {job} rejected")
    try:
        yield
    finally:
        store.release_account_lock(user_id)


def _run_stage(store: NetworkStore, user_id: int, stage: str, fn: Callable[[], Dict]) -> Dict:
    """Run one stage and log it to pipeline_runs (success or failed)."""
    start = time.time()
    try:
        counts = fn()
    except Exception as e:
        duration = time.time() - start
        logger.error(f"Stage {stage} FAILED for user {user_id} after {duration:.1f}s: {e}")
        store.record_pipeline_run(user_id, stage, None, duration, "failed", str(e))
        raise
    duration = time.time() - start
    store.record_pipeline_run(user_id, stage, counts, duration)
    logger.info(f"Stage {stage} for user {user_id} done in {duration:.1f}s: {counts}")
    return counts


# =============================================================================
# STAGES (one idempotent function each)
# =============================================================================

def run_enrichment_stage(user_id: int, store: NetworkStore, enrichment) -> Dict:
    return _run_stage(store, user_id, "enrichment",
                      lambda: enrich_companies(user_id, store, enrichment))


def run_inference_stage(user_id: int, store: NetworkStore, drafter=None) -> Dict:
    return _run_stage(store, user_id, "inference",
                      lambda: recalculate_intro_opportunities(user_id, store, drafter=drafter))


def run_outbound_stage(user_id: int, store: NetworkStore, drafter=None,
                       quota: Optional[int] = None) -> Dict:
    return _run_stage(store, user_id, "outbound",
                      lambda: auto_generate_outbound(user_id, store, quota=quota, drafter=drafter))


def run_scoring_stage(user_id: int, store: NetworkStore, as_of: Optional[date] = None) -> Dict:
    return _run_stage(store, user_id, "scoring",
                      lambda: score_all_opportunities(user_id, store, as_of=as_of))


def run_followup_stage(user_id: int, store: NetworkStore, completion,
                       days: Optional[int] = None) -> Dict:
    """Independent of the main pipeline; still takes the account lock."""
    try:
        with account_lock(store, user_id, "followup"):
            return _run_stage(store, user_id, "followup",
                              lambda: generate_follow_ups_for_account(user_id, store, completion, days=days))
    except ConflictError as e:
        logger.warning(str(e))
        store.record_pipeline_run(user_id, "followup", None, 0.0, "rejected", str(e))
        raise


def run_weekly_advisor_stage(user_id: int, store: NetworkStore, completion=None,
                             period_end: Optional[datetime] = None) -> Dict:
    """Weekly report for one account; takes the account lock like follow-ups."""

    def _advise() -> Dict:
        report = generate_weekly_summary(user_id, store, completion, period_end=period_end)
        return {'summary_id': report['id'],
                'stalled': report['metrics']['stalled_opportunities']}

    try:
        with account_lock(store, user_id, "advisor"):
            return _run_stage(store, user_id, "advisor", _advise)
    except ConflictError as e:
        logger.warning(str(e))
        store.record_pipeline_run(user_id, "advisor", None, 0.0, "rejected", str(e))
        raise


def run_account_pipeline(user_id: int, store: NetworkStore, completion=None,
                         as_of: Optional[date] = None) -> Dict[str, Dict]:
    """
    All stages for one account, strictly in order. Enrichment is best-effort;
    a failing inference stage stops the account since later stages read its
    output. Overlapping runs for the same account raise ConflictError.
    """
    drafter = OutreachDrafter(completion) if completion is not None else None
    enrichment = CompletionEnrichmentSource(completion) if completion is not None else None
    results = {}

    try:
        with account_lock(store, user_id, "pipeline"):
            if enrichment is not None:
                try:
                    results['enrichment'] = run_enrichment_stage(user_id, store, enrichment)
                except Exception as e:
                    logger.warning(f"Enrichment skipped for user {user_id}: {e}")
            results['inference'] = run_inference_stage(user_id, store, drafter)
            results['outbound'] = run_outbound_stage(user_id, store, drafter)
            results['scoring'] = run_scoring_stage(user_id, store, as_of)
    except ConflictError as e:
        logger.warning(str(e))
        store.record_pipeline_run(user_id, "pipeline", None, 0.0, "rejected", str(e))
        raise
    return results


# =============================================================================
# BATCH TRIGGER
# =============================================================================

def _post_to_discord(webhook_url: str, summary: Dict):
    """Post run summary to Discord webhook."""
    if not webhook_url:
        return
    totals = summary.get("totals", {})
    message = (
        f"**IntroEngine Pipeline**\n"
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"Duration: {summary.get('duration', 0):.1f}s\n"
        f"Accounts: {summary.get('accounts', 0)} | OK: {summary.get('succeeded', 0)} | "
        f"Failed: {summary.get('failed', 0)} | Rejected: {summary.get('rejected', 0)}\n"
        f"Opportunities created: {totals.get('created', 0)} | "
        f"retired: {totals.get('retired', 0)} | scored: {totals.get('scored', 0)}"
    )
    try:
        requests.post(webhook_url, json={"content": message}, timeout=10)
    except requests.RequestException as e:
        logger.warning(f"Discord webhook failed: {e}")


def _default_completion():
    return AnthropicCompletionService() if ANTHROPIC_API_KEY else None


def run_all_accounts(db_path: Optional[str] = None, completion=None,
                     max_workers: int = PIPELINE_MAX_WORKERS,
                     store_factory: Optional[Callable[[], NetworkStore]] = None,
                     as_of: Optional[date] = None,
                     webhook_url: Optional[str] = None) -> Dict:
    """
    Run the account pipeline for every active user on a thread pool. Each
    worker opens its own store connection. One account failing never stops
    the others.
    """
    start = time.time()
    store_factory = store_factory or (lambda: NetworkStore(db_path))
    with store_factory() as store:
        user_ids = [u['id'] for u in store.list_users()]

    def _worker(user_id: int) -> Dict:
        with store_factory() as worker_store:
            return run_account_pipeline(user_id, worker_store, completion, as_of)

    summary = {'accounts': len(user_ids), 'succeeded': 0, 'failed': 0, 'rejected': 0,
               'totals': {'created': 0, 'retired': 0, 'scored': 0}}
    if user_ids:
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(user_ids)))) as pool:
            futures = {pool.submit(_worker, uid): uid for uid in user_ids}
            for future in as_completed(futures):
                user_id = futures[future]
                try:
                    results = future.result()
                except ConflictError:
                    summary['rejected'] += 1
                    continue
                except Exception as e:
                    logger.error(f"Pipeline failed for user {user_id}: {e}")
                    summary['failed'] += 1
                    continue
                summary['succeeded'] += 1
                for stage in ('inference', 'outbound'):
                    summary['totals']['created'] += results.get(stage, {}).get('created', 0)
                    summary['totals']['retired'] += results.get(stage, {}).get('retired', 0)
                summary['totals']['scored'] += results.get('scoring', {}).get('scored', 0)

    summary['duration'] = round(time.time() - start, 2)
    logger.info(f"Pipeline complete in {summary['duration']:.1f}s: {summary['succeeded']} ok, "
                f"{summary['failed']} failed, {summary['rejected']} rejected")

    _post_to_discord(webhook_url if webhook_url is not None else DISCORD_WEBHOOK_URL, summary)
    return summary


def run_followups_all_accounts(db_path: Optional[str] = None, completion=None,
                               days: Optional[int] = None) -> Dict:
    """Follow-up drafts for every active user, one account at a time."""
    completion = completion or _default_completion()
    summary = {'accounts': 0, 'drafted': 0, 'failed': 0}
    if completion is None:
        logger.error("No completion service configured (ANTHROPIC_API_KEY); follow-ups skipped")
        return summary
    with NetworkStore(db_path) as store:
        for user in store.list_users():
            summary['accounts'] += 1
            try:
                counts = run_followup_stage(user['id'], store, completion, days=days)
                summary['drafted'] += counts['drafted']
            except Exception as e:
                logger.error(f"Follow-ups failed for user {user['id']}: {e}")
                summary['failed'] += 1
    return summary


def run_weekly_advisor_all_accounts(db_path: Optional[str] = None, completion=None,
                                    period_end: Optional[datetime] = None) -> Dict:
    """Weekly advisor report for every active user, one account at a time."""
    completion = completion or _default_completion()
    summary = {'accounts': 0, 'reports': 0, 'failed': 0}
    with NetworkStore(db_path) as store:
        for user in store.list_users():
            summary['accounts'] += 1
            try:
                run_weekly_advisor_stage(user['id'], store, completion, period_end)
                summary['reports'] += 1
            except Exception as e:
                logger.error(f"Weekly advisor failed for user {user['id']}: {e}")
                summary['failed'] += 1
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the IntroEngine opportunity pipeline")
    parser.add_argument("--db", help="SQLite database path (default: INTROENGINE_DB_PATH or data/)")
    parser.add_argument("--user", type=int, help="Run a single account")
    parser.add_argument("--stage", default="all",
                        choices=["all", "inference", "outbound", "scoring", "followup", "advisor"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO), format=LOG_FORMAT)
    completion = _default_completion()

    if args.user is None:
        if args.stage == "followup":
            return run_followups_all_accounts(args.db, completion)
        if args.stage == "advisor":
            return run_weekly_advisor_all_accounts(args.db, completion)
        if args.stage != "all":
            parser.error("--stage other than all/followup/advisor needs --user")
        return run_all_accounts(args.db, completion)

    drafter = OutreachDrafter(completion) if completion is not None else None
    with NetworkStore(args.db) as store:
        if args.stage == "all":
            return run_account_pipeline(args.user, store, completion)
        if args.stage == "followup":
            if completion is None:
                parser.error("follow-ups need ANTHROPIC_API_KEY")
            return run_followup_stage(args.user, store, completion)
        if args.stage == "advisor":
            return run_weekly_advisor_stage(args.user, store, completion)
        with account_lock(store, args.user, args.stage):
            if args.stage == "inference":
                return run_inference_stage(args.user, store, drafter)
            if args.stage == "outbound":
                return run_outbound_stage(args.user, store, drafter)
            return run_scoring_stage(args.user, store)


if __name__ == "__main__":
    main()
