#!/usr/bin/env python3
"""Fail import runs left in 'running' by a worker that died mid-import.

Reclaimed runs become retriable through the API. Run periodically (cron) or
by hand after a worker crash.
"""

import argparse
import logging
from datetime import timedelta

from app.core.config import get_settings
from app.core.logging_config import configure_logging
from app.db.session import SessionLocal
from app.services.ingestion_runs import reclaim_stale_runs

logger = logging.getLogger("reclaim_stuck_runs")


def main(argv=None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=settings.stale_run_after_minutes,
        help="Reclaim runs with no progress for this many minutes",
    )
    args = parser.parse_args(argv)

    configure_logging()
    session = SessionLocal()
    try:
        reclaimed = reclaim_stale_runs(
            session, older_than=timedelta(minutes=args.older_than_minutes)
        )
    finally:
        session.close()

    logger.info(f"Reclaimed {len(reclaimed)} stuck import run(s)")
    for run_id in reclaimed:
        print(run_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
