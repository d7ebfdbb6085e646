#!/usr/bin/env python3
# scripts/create_daily_snapshots.py
"""
Persist today's valuation for every portfolio.

Meant to run once a day from cron or a scheduler. Portfolios that already
have today's snapshot are skipped, so re-running is harmless. Exits with
status 1 when any portfolio failed.
"""

import logging
import sys

from portfolio_tracker.database import SessionLocal, init_db
from portfolio_tracker.dependencies import get_snapshot_store
from portfolio_tracker.utils.context import correlation_scope
from portfolio_tracker.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def run() -> int:
    setup_logging()
    init_db()

    db = SessionLocal()
    try:
        with correlation_scope() as run_id:
            logger.info(f"Daily snapshot run {run_id} starting")
            report = get_snapshot_store().create_daily_snapshots(db)
    finally:
        db.close()

    for portfolio_id, reason in report.failed.items():
        logger.error(f"Portfolio {portfolio_id}: {reason}")
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(run())
