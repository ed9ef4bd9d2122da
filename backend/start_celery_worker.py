#!/usr/bin/env python3
"""Start a Celery worker consuming the imports queue."""

import sys
import warnings

# Containers commonly run as root; Celery warns about it on every start
warnings.filterwarnings("ignore", category=RuntimeWarning, message=".*superuser privileges.*")

from app.workers.celery_app import IMPORTS_QUEUE, celery_app  # noqa: E402

if __name__ == "__main__":
    celery_app.worker_main(
        [
            "worker",
            "--loglevel=info",
            f"--queues={IMPORTS_QUEUE}",
            "--pool=solo",
            "--without-mingle",
            "--without-gossip",
            *sys.argv[1:],
        ]
    )
