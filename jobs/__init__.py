"""
Jobs package: scheduled and command-line entry points.

  pipeline   per-account stages, batch trigger, run log, Discord summary
  scheduler  APScheduler cron jobs
"""
