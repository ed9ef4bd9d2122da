"""Import run lifecycle: start, background execution, retry, and queries.

A run moves ``running -> completed`` or ``running -> failed``; only an explicit
retry moves ``failed -> running``. The ``import_runs`` row is the only record
of job state, so workers and API processes can restart freely.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.errors import (
    FetchError,
    InvalidStateError,
    NotFoundOrForbiddenError,
    ParseError,
    WriteError,
)
from app.db.models.import_run import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    ImportRun,
)
from app.db.models.product import ImportedProduct
from app.services import progress_tracker
from app.services.batch_writer import delete_run_products, write_batch
from app.services.filtering import FilterParams, Page, apply_filter, paginate
from app.services.row_parser import parse_rows
from app.services.row_transformer import transform_row
from app.services.source_fetcher import fetch_source
from app.utils.batching import BatchPacer, chunked

logger = logging.getLogger(__name__)

RUN_FILTER_FIELDS = (
    "status",
    "file_name",
    "total_rows",
    "processed_rows",
    "attempt",
    "started_at",
    "completed_at",
    "created_at",
)
PRODUCT_FILTER_FIELDS = ("name", "category", "price", "stock", "description")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def enqueue_run(run_id: str) -> None:
    """Hand the run to a Celery worker on the imports queue."""
    from app.workers.celery_app import IMPORTS_QUEUE
    from app.workers.tasks.import_products import import_products_task

    import_products_task.apply_async(args=(run_id,), queue=IMPORTS_QUEUE)


def initiate_run(
    db: Session, owner_id: str, file_name: str, source_locator: str
) -> ImportRun:
    """Create a running import and schedule its execution without waiting.

    The run row is committed before the task is enqueued, so it is visible to
    queries before the worker touches the source. If the broker refuses the
    task, the run is failed immediately and can be retried later.
    """
    run = ImportRun(
        owner_id=owner_id,
        file_name=file_name,
        source_locator=source_locator,
        status=STATUS_RUNNING,
        processed_rows=0,
        started_at=_utcnow(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    logger.info(f"Created import run {run.id} for {file_name} (owner {owner_id})")

    try:
        enqueue_run(run.id)
    except Exception as exc:
        logger.error(f"Error enqueueing import run {run.id}: {exc}", exc_info=True)
        progress_tracker.mark_failed(db, run.id, f"Failed to start import: {exc}")
        db.refresh(run)
    return run


def _describe_failure(exc: Exception) -> str:
    if isinstance(exc, (FetchError, ParseError, WriteError)):
        return str(exc) or exc.__class__.__name__
    if isinstance(exc, SQLAlchemyError):
        return f"Database error: {exc.__class__.__name__}"
    return str(exc) or f"Unexpected error: {exc.__class__.__name__}"


def _process(db: Session, run: ImportRun, attempt: int) -> None:
    settings = get_settings()
    run_id = run.id

    content = fetch_source(run.source_locator)
    rows = parse_rows(content, run.file_name)
    total = len(rows)
    if not progress_tracker.set_total(db, run_id, total, attempt):
        logger.warning(f"Run {run_id} attempt {attempt} was superseded before parsing finished")
        return
    logger.info(f"Run {run_id}: {total} rows to process")

    pacer = BatchPacer(settings.import_batch_interval_seconds)
    processed = inserted = rejected = duplicates = 0
    for batch in chunked(rows, settings.import_batch_size):
        pacer.wait()
        records = [record for record in map(transform_row, batch) if record is not None]
        stats = write_batch(db, run_id, records)
        if not progress_tracker.advance(db, run_id, len(batch), attempt):
            # Reclaimed or retried underneath us; the batch was rolled back
            logger.warning(
                f"Run {run_id} attempt {attempt} is no longer current, abandoning execution"
            )
            return

        processed += len(batch)
        inserted += stats.inserted
        duplicates += stats.duplicates
        rejected += len(batch) - len(records)
        logger.debug(f"Run {run_id}: committed batch, {processed}/{total} rows processed")
        progress_tracker.publish_progress(
            run_id,
            processed / total,
            message=f"Processed {processed}/{total} rows",
            status=STATUS_RUNNING,
            meta={
                "processed": processed,
                "total": total,
                "inserted": inserted,
                "rejected": rejected,
                "duplicates": duplicates,
            },
        )

    if not progress_tracker.mark_completed(db, run_id, attempt):
        logger.warning(f"Run {run_id} attempt {attempt} was superseded before completion")
        return
    logger.info(
        f"Run {run_id} completed: {inserted} imported, {rejected} rejected, "
        f"{duplicates} duplicates out of {total} rows"
    )
    progress_tracker.publish_progress(
        run_id,
        1.0,
        message="Import complete",
        status=STATUS_COMPLETED,
        meta={
            "processed": total,
            "total": total,
            "inserted": inserted,
            "rejected": rejected,
            "duplicates": duplicates,
        },
    )


def execute_run(
    run_id: str, session_factory: Callable[[], Session] | None = None
) -> str | None:
    """Run the fetch -> parse -> batch write pipeline for one import.

    Every failure is recorded on the run as ``failed`` and never re-raised;
    this is the body of a background task and must not take its worker down.
    Returns the run's final status, or None when there was nothing to do.
    """
    if session_factory is None:
        from app.db.session import get_fresh_session

        session_factory = get_fresh_session

    db = session_factory()
    try:
        run = db.get(ImportRun, run_id)
        if run is None:
            logger.warning(f"Import run {run_id} not found, skipping execution")
            return None
        if run.status != STATUS_RUNNING:
            logger.warning(f"Import run {run_id} is {run.status}, skipping execution")
            return run.status

        attempt = run.attempt
        try:
            _process(db, run, attempt)
        except Exception as exc:
            db.rollback()
            message = _describe_failure(exc)
            logger.error(f"Import run {run_id} failed: {message}", exc_info=True)
            try:
                recorded = progress_tracker.mark_failed(db, run_id, message, attempt)
            except SQLAlchemyError as mark_exc:
                db.rollback()
                logger.error(
                    f"Could not record failure for run {run_id}: {mark_exc}", exc_info=True
                )
                return None
            if recorded:
                progress_tracker.publish_progress(
                    run_id,
                    0.0,
                    message="Import failed",
                    status=STATUS_FAILED,
                    meta={"error": message},
                )

        db.expire_all()
        refreshed = db.get(ImportRun, run_id)
        return refreshed.status if refreshed is not None else None
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Database error executing run {run_id}: {exc}", exc_info=True)
        return None
    finally:
        db.close()


def _owned_run(db: Session, run_id: str, owner_id: str) -> ImportRun:
    run = db.scalar(
        select(ImportRun).where(ImportRun.id == run_id, ImportRun.owner_id == owner_id)
    )
    if run is None:
        raise NotFoundOrForbiddenError(run_id)
    return run


def retry_run(db: Session, run_id: str, owner_id: str) -> ImportRun:
    """Rewind a failed run to running, discard its products, and re-schedule it.

    The status check and the transition are one conditional UPDATE, so of two
    concurrent retries exactly one succeeds.

    Raises:
        NotFoundOrForbiddenError: no such run for this owner.
        InvalidStateError: the run is running or completed.
    """
    result = db.execute(
        update(ImportRun)
        .where(
            ImportRun.id == run_id,
            ImportRun.owner_id == owner_id,
            ImportRun.status == STATUS_FAILED,
        )
        .values(
            status=STATUS_RUNNING,
            attempt=ImportRun.attempt + 1,
            total_rows=None,
            processed_rows=0,
            error_message=None,
            completed_at=None,
            started_at=_utcnow(),
            updated_at=_utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        run = _owned_run(db, run_id, owner_id)
        raise InvalidStateError(run_id, run.status)

    removed = delete_run_products(db, run_id)
    db.commit()
    logger.info(f"Retrying import run {run_id}; discarded {removed} products")

    run = _owned_run(db, run_id, owner_id)
    try:
        enqueue_run(run_id)
    except Exception as exc:
        logger.error(f"Error enqueueing retry of run {run_id}: {exc}", exc_info=True)
        progress_tracker.mark_failed(db, run_id, f"Failed to start import: {exc}")
        db.refresh(run)
    return run


def get_run(db: Session, run_id: str, owner_id: str) -> ImportRun:
    return _owned_run(db, run_id, owner_id)


def count_products(db: Session, run_id: str) -> int:
    return (
        db.scalar(
            select(func.count(ImportedProduct.id)).where(
                ImportedProduct.import_run_id == run_id
            )
        )
        or 0
    )


def list_runs(db: Session, owner_id: str, params: FilterParams) -> Page:
    query = select(ImportRun).where(ImportRun.owner_id == owner_id)
    query = apply_filter(query, ImportRun, params, RUN_FILTER_FIELDS)
    return paginate(db, query, params, ImportRun.created_at.desc(), ImportRun.id)


def list_records(
    db: Session, run_id: str, owner_id: str, params: FilterParams
) -> Page:
    """Products written by one of the owner's runs."""
    _owned_run(db, run_id, owner_id)
    query = select(ImportedProduct).where(ImportedProduct.import_run_id == run_id)
    query = apply_filter(query, ImportedProduct, params, PRODUCT_FILTER_FIELDS)
    return paginate(db, query, params, ImportedProduct.id)


def reclaim_stale_runs(
    db: Session, older_than: timedelta | None = None, now: datetime | None = None
) -> list[str]:
    """Fail running imports whose last progress write is older than the cutoff.

    Workers that die mid-run leave their run ``running`` forever; this sweep
    turns them into retriable failures. Returns the reclaimed run ids.
    """
    if older_than is None:
        older_than = timedelta(minutes=get_settings().stale_run_after_minutes)
    cutoff = (now or _utcnow()) - older_than

    stale_ids = db.scalars(
        select(ImportRun.id).where(
            ImportRun.status == STATUS_RUNNING,
            or_(
                ImportRun.updated_at < cutoff,
                and_(ImportRun.updated_at.is_(None), ImportRun.started_at < cutoff),
            ),
        )
    ).all()

    reclaimed = []
    for run_id in stale_ids:
        message = f"Run abandoned: no progress since {cutoff.isoformat(timespec='seconds')}"
        if progress_tracker.mark_failed(db, run_id, message):
            reclaimed.append(run_id)
            logger.warning(f"Reclaimed stale import run {run_id}")
    return reclaimed
