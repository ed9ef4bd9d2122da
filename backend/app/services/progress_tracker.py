"""Durable run status transitions plus Redis progress snapshots for the UI.

The ``import_runs`` row is the source of truth. Every transition is a
conditional UPDATE guarded by ``status = 'running'`` so a completed or failed
run is never moved again by a late writer. The Redis snapshot is advisory.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.models.import_run import STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING, ImportRun
from app.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)

settings = get_settings()
redis_client = create_redis_client(settings.redis_url, decode_responses=True)
PROGRESS_PREFIX = "jobs:progress:"
PROGRESS_TTL = timedelta(hours=24)
DEFAULT_FAILURE_MESSAGE = "Unknown error occurred"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _update_running(
    db: Session, run_id: str, values: dict[str, Any], attempt: int | None = None
) -> bool:
    """Apply ``values`` while the run is running (and on ``attempt``, if given)."""
    criteria = [ImportRun.id == run_id, ImportRun.status == STATUS_RUNNING]
    if attempt is not None:
        criteria.append(ImportRun.attempt == attempt)
    result = db.execute(
        update(ImportRun)
        .where(*criteria)
        .values(updated_at=_utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Terminal or superseded; drop anything staged alongside this checkpoint
        db.rollback()
        return False
    db.commit()
    return True


def set_total(
    db: Session, run_id: str, total: int, attempt: int | None = None
) -> bool:
    """Record the number of source rows once the file is parsed."""
    return _update_running(db, run_id, {"total_rows": total}, attempt)


def advance(
    db: Session, run_id: str, delta: int, attempt: int | None = None
) -> bool:
    """Add ``delta`` consumed source rows and commit the pending batch with it.

    No-op (returns False) once the run is terminal or a retry has replaced
    ``attempt``.
    """
    return _update_running(
        db, run_id, {"processed_rows": ImportRun.processed_rows + delta}, attempt
    )


def mark_completed(db: Session, run_id: str, attempt: int | None = None) -> bool:
    """Finish the run; processed is pinned to total to absorb accounting drift."""
    return _update_running(
        db,
        run_id,
        {
            "status": STATUS_COMPLETED,
            "processed_rows": func.coalesce(
                ImportRun.total_rows, ImportRun.processed_rows
            ),
            "completed_at": _utcnow(),
        },
        attempt,
    )


def mark_failed(
    db: Session, run_id: str, message: str | None, attempt: int | None = None
) -> bool:
    """Fail the run, keeping processed at its last committed checkpoint."""
    message = (message or "").strip() or DEFAULT_FAILURE_MESSAGE
    return _update_running(
        db,
        run_id,
        {"status": STATUS_FAILED, "error_message": message, "completed_at": _utcnow()},
        attempt,
    )


def _key(run_id: str) -> str:
    return f"{PROGRESS_PREFIX}{run_id}"


def publish_progress(
    run_id: str,
    progress: float,
    message: str | None = None,
    *,
    status: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Persist a progress snapshot so the UI can show live counters."""
    payload = {
        "job_id": run_id,
        "progress": max(0.0, min(progress, 1.0)),
        "message": message,
        "status": status,
        "meta": meta or {},
    }
    try:
        redis_client.set(
            _key(run_id),
            json.dumps(payload),
            ex=int(PROGRESS_TTL.total_seconds()),
        )
    except RedisError as exc:
        # Redis availability should not break ingestion.
        logger.debug(f"Could not publish progress for run {run_id}: {exc}")


def fetch_progress(run_id: str) -> dict[str, Any]:
    """Return the latest snapshot published for the run, or {}."""
    try:
        raw = redis_client.get(_key(run_id))
    except RedisError:
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}
