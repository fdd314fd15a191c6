"""
Weekly Advisor
Once a week, per account: count what happened to the user's opportunities
over the last seven days, ask the completion service for a short summary
with insights and recommended actions, and store the report.

The metrics are computed from the opportunity rows alone. When the
completion service is missing or fails, the report is still stored with
"N/A" summary fields.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from introengine.errors import ServiceError
from introengine.status import (INTRO_TYPES, REASON_BELOW_THRESHOLD,
                                REASON_PATH_VANISHED, STATUS_DEMO_SCHEDULED,
                                STATUS_INTRO_REQUESTED, STATUS_LOST,
                                STATUS_MEETING_BOOKED, STATUS_NEW,
                                STATUS_SUGGESTED, STATUS_WON, TYPE_OUTBOUND,
                                _parse_ts, is_stale)
from introengine.thresholds import WEEKLY_PERIOD_DAYS, WEEKLY_STALL_DAYS

logger = logging.getLogger(__name__)

ADVISOR_SYSTEM = (
    "You are a sales manager reviewing one seller's week in a relationship-led "
    "pipeline. Look at intros generated and requested, replies, outbound left "
    "unsent, which industries are working and how the seller is doing. Reply as "
    "{\"summary\": {\"intros_generated\": \"...\", \"intros_requested\": \"...\", "
    "\"responses\": \"...\", \"outbound_pending\": \"...\", \"wins\": \"...\", "
    "\"losses\": \"...\"}, \"insights\": [\"...\"], \"recommended_actions\": [\"...\"]} "
    "with at most three insights and three actions."
)

SUMMARY_FIELDS = ('intros_generated', 'intros_requested', 'responses',
                  'outbound_pending', 'wins', 'losses')

# summary field -> metric it falls back to when the reply leaves it out
_SUMMARY_METRICS = {
    'intros_generated': 'intros_generated',
    'intros_requested': 'intros_requested',
    'responses': 'meetings_booked',
    'outbound_pending': 'outbound_pending',
    'wins': 'wins',
    'losses': 'losses',
}

_PIPELINE_REASONS = (REASON_PATH_VANISHED, REASON_BELOW_THRESHOLD)


def _in_period(value, start: datetime, end: datetime) -> bool:
    ts = _parse_ts(value)
    return ts is not None and start <= ts <= end


def calculate_weekly_metrics(opportunities: Iterable[Dict], period_start: datetime,
                             period_end: datetime,
                             stall_days: int = WEEKLY_STALL_DAYS) -> Dict:
    """
    Weekly counts over list_opportunities rows.

    Period counts look at rows created or moved within [period_start,
    period_end]. outbound_pending and stalled_opportunities are snapshots of
    the open rows at period_end. Losses count only opportunities the user
    closed; ones the pipeline retired are counted under 'retired'.
    """
    metrics = {
        'intros_generated': 0,
        'intros_requested': 0,
        'meetings_booked': 0,
        'outbound_suggested': 0,
        'outbound_pending': 0,
        'wins': 0,
        'losses': 0,
        'retired': 0,
        'stalled_opportunities': 0,
        'by_industry': {},
        'by_type': {'intro': 0, 'outbound': 0},
    }

    for opp in opportunities:
        is_intro = opp['type'] in INTRO_TYPES
        created = _in_period(opp.get('created_at'), period_start, period_end)
        moved = _in_period(opp.get('status_changed_at'), period_start, period_end)
        status = opp['status']

        if created and is_intro:
            metrics['intros_generated'] += 1
        if created and opp['type'] == TYPE_OUTBOUND:
            metrics['outbound_suggested'] += 1

        if moved:
            if status == STATUS_INTRO_REQUESTED:
                metrics['intros_requested'] += 1
            elif status in (STATUS_MEETING_BOOKED, STATUS_DEMO_SCHEDULED):
                metrics['meetings_booked'] += 1
            elif status == STATUS_WON:
                metrics['wins'] += 1
            elif status == STATUS_LOST:
                if opp.get('closed_reason') in _PIPELINE_REASONS:
                    metrics['retired'] += 1
                else:
                    metrics['losses'] += 1

        if opp['type'] == TYPE_OUTBOUND and status in (STATUS_SUGGESTED, STATUS_NEW):
            metrics['outbound_pending'] += 1
        if is_stale(opp, stall_days, period_end):
            metrics['stalled_opportunities'] += 1

        if created or moved:
            industry = opp.get('target_industry') or "Unknown"
            metrics['by_industry'][industry] = metrics['by_industry'].get(industry, 0) + 1
            metrics['by_type']['intro' if is_intro else 'outbound'] += 1

    return metrics


def _fallback_advice() -> Dict:
    return {
        'summary': {field: "N/A" for field in SUMMARY_FIELDS},
        'insights': ["Weekly summary could not be generated"],
        'recommended_actions': [],
    }


def _string_list(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def summarize_week(metrics: Dict, completion) -> Dict:
    """
    Ask the completion service for {summary, insights, recommended_actions}.
    Never raises: a failed or malformed reply gives the "N/A" fallback, and
    summary fields the reply leaves out are filled from the metrics.
    """
    if completion is None:
        logger.warning("No completion service configured; weekly summary falls back to N/A")
        return _fallback_advice()
    try:
        reply = completion.complete(ADVISOR_SYSTEM, json.dumps(metrics, indent=2))
    except ServiceError as e:
        logger.warning(f"Weekly summary failed: {e}")
        return _fallback_advice()
    except Exception as e:
        logger.error(f"Weekly summary raised unexpectedly: {e}")
        return _fallback_advice()
    if not isinstance(reply, dict):
        logger.warning("Weekly summary: malformed reply")
        return _fallback_advice()

    raw = reply.get('summary') if isinstance(reply.get('summary'), dict) else {}
    summary = {}
    for field in SUMMARY_FIELDS:
        value = raw.get(field)
        if isinstance(value, (str, int, float)) and str(value).strip():
            summary[field] = str(value).strip()
        else:
            summary[field] = str(metrics.get(_SUMMARY_METRICS[field], 0))
    return {
        'summary': summary,
        'insights': _string_list(reply.get('insights')),
        'recommended_actions': _string_list(reply.get('recommended_actions')),
    }


def generate_weekly_summary(user_id: int, store, completion=None,
                            period_end: Optional[datetime] = None,
                            days: int = WEEKLY_PERIOD_DAYS) -> Dict:
    """Compute, summarize and store the weekly report for one account. Returns the report."""
    period_end = period_end or datetime.utcnow()
    period_start = period_end - timedelta(days=days)

    metrics = calculate_weekly_metrics(store.list_opportunities(user_id), period_start, period_end)
    report = {
        'period_start': period_start.strftime("%Y-%m-%d %H:%M:%S"),
        'period_end': period_end.strftime("%Y-%m-%d %H:%M:%S"),
        'metrics': metrics,
        'generated_at': datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S"),
    }
    report.update(summarize_week(metrics, completion))
    report['id'] = store.add_weekly_summary(user_id, report)

    logger.info(f"Weekly summary for user {user_id}: {metrics['intros_generated']} intros, "
                f"{metrics['wins']} won, {metrics['losses']} lost, "
                f"{metrics['stalled_opportunities']} stalled")
    return report
