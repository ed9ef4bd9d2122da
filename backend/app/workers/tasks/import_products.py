"""Celery task that executes one spreadsheet import run."""

from __future__ import annotations

import logging

from app.services.ingestion_runs import execute_run
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="app.workers.tasks.import_products")
def import_products_task(self, run_id: str) -> dict:
    """Fetch, parse, and persist the run's spreadsheet; status lives on the run row."""
    logger.info(f"Worker {self.request.hostname} picked up import run {run_id}")
    final_status = execute_run(run_id)
    return {"run_id": run_id, "status": final_status}
