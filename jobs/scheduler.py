"""
Scheduler for IntroEngine
Runs scheduled tasks using APScheduler.

Schedule (SCHEDULER_TIMEZONE, default UTC):
  2:00 AM    Account pipeline (enrichment, inference, outbound, scoring)
  8:00 AM    Follow-up drafts for stale opportunities
  Monday 7:00 AM  Weekly advisor report per account
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from introengine.config import LOG_FORMAT, LOG_LEVEL, SCHEDULER_TIMEZONE
from jobs.pipeline import (run_all_accounts, run_followups_all_accounts,
                           run_weekly_advisor_all_accounts)

logger = logging.getLogger("scheduler")


def _run_pipeline_wrapper():
    """Wrapper for the account pipeline with error handling."""
    try:
        logger.info("Starting account pipeline...")
        summary = run_all_accounts()
        logger.info(f"Account pipeline complete: {summary['succeeded']}/{summary['accounts']} accounts")
    except Exception as e:
        logger.error(f"Account pipeline failed: {e}")


def _run_followups_wrapper():
    """Wrapper for follow-up drafting with error handling."""
    try:
        logger.info("Starting follow-up scan...")
        summary = run_followups_all_accounts()
        logger.info(f"Follow-up scan complete: {summary['drafted']} drafts")
    except Exception as e:
        logger.error(f"Follow-up scan failed: {e}")


def _run_weekly_advisor_wrapper():
    """Wrapper for the weekly advisor with error handling."""
    try:
        logger.info("Starting weekly advisor...")
        summary = run_weekly_advisor_all_accounts()
        logger.info(f"Weekly advisor complete: {summary['reports']}/{summary['accounts']} reports")
    except Exception as e:
        logger.error(f"Weekly advisor failed: {e}")


def build_scheduler(timezone: str = SCHEDULER_TIMEZONE) -> BlockingScheduler:
    """Blocking scheduler with all jobs registered. One instance per job at a time."""
    scheduler = BlockingScheduler(timezone=timezone)

    scheduler.add_job(
        _run_pipeline_wrapper,
        trigger=CronTrigger(hour=2, minute=0, timezone=timezone),
        id="account_pipeline",
        name="Nightly Account Pipeline",
        misfire_grace_time=3600,
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled: account_pipeline at 2:00 AM {timezone}")

    scheduler.add_job(
        _run_followups_wrapper,
        trigger=CronTrigger(hour=8, minute=0, timezone=timezone),
        id="followup_scan",
        name="Follow-up Drafts",
        misfire_grace_time=3600,
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled: followup_scan at 8:00 AM {timezone}")

    scheduler.add_job(
        _run_weekly_advisor_wrapper,
        trigger=CronTrigger(day_of_week="mon", hour=7, minute=0, timezone=timezone),
        id="weekly_advisor",
        name="Weekly Advisor",
        misfire_grace_time=3600,
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    logger.info(f"Scheduled: weekly_advisor at Monday 7:00 AM {timezone}")
    return scheduler


def start_scheduler():
    """Start the blocking scheduler with all configured jobs."""
    logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO), format=LOG_FORMAT)
    scheduler = build_scheduler()
    logger.info("Scheduler started. Press Ctrl+C to exit.")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler shutting down.")
        scheduler.shutdown()


if __name__ == "__main__":
    start_scheduler()
