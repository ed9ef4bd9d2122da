"""Shared helpers for shaping import run responses."""
from __future__ import annotations

from app.api.schemas.import_run import ImportRunStatus
from app.db.models.import_run import STATUS_FAILED, ImportRun


def serialize_run(
    run: ImportRun,
    progress_payload: dict | None = None,
    product_count: int | None = None,
) -> ImportRunStatus:
    """Combine DB state with the cached progress snapshot into a response.

    Status and counters always come from the database; the snapshot only
    contributes its message and live counters (inserted/rejected/duplicates).
    """
    progress_payload = progress_payload or {}
    snapshot_matches = progress_payload.get("status") == run.status

    message = progress_payload.get("message") if snapshot_matches else None
    if run.status == STATUS_FAILED:
        message = "Import failed"
    elif not message:
        total_display = run.total_rows if run.total_rows is not None else "?"
        message = f"Processed {run.processed_rows}/{total_display} rows"

    return ImportRunStatus(
        id=run.id,
        owner_id=run.owner_id,
        file_name=run.file_name,
        status=run.status,
        progress=run.progress,
        message=message,
        total_rows=run.total_rows,
        processed_rows=run.processed_rows or 0,
        attempt=run.attempt or 1,
        product_count=product_count,
        error_message=run.error_message,
        started_at=run.started_at or run.created_at,
        completed_at=run.completed_at,
        meta=(progress_payload.get("meta") or {}) if snapshot_matches else {},
    )
