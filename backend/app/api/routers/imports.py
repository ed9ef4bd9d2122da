"""Endpoints for starting, tracking, and retrying spreadsheet imports."""

from __future__ import annotations

import asyncio
import logging
from io import BytesIO
from pathlib import Path
from typing import AsyncGenerator
from urllib.parse import urlparse

from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    UploadFile,
    status,
)
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.dependencies.auth import get_owner_id
from app.api.dependencies.filters import get_filter_params
from app.api.routers.run_helpers import serialize_run
from app.api.schemas.import_run import (
    ImportRunListResponse,
    ImportRunStatus,
    ProcessUrlRequest,
)
from app.api.schemas.product import ImportedProductListResponse, ImportedProductRead
from app.core.config import get_settings
from app.core.errors import (
    InvalidFilterError,
    InvalidStateError,
    NotFoundOrForbiddenError,
)
from app.db.session import get_db
from app.services import ingestion_runs
from app.services.filtering import FilterParams
from app.services.progress_tracker import fetch_progress
from app.services.row_parser import SUPPORTED_SUFFIXES
from app.storage.uploads import delete_upload, save_upload

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_URL_FILE_NAME = "file.xlsx"
STREAM_POLL_SECONDS = 2.0
STREAM_IDLE_LIMIT = 150  # polls without progress before giving up (~5 minutes)


def _not_found(exc: NotFoundOrForbiddenError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _server_error(action: str, exc: Exception) -> HTTPException:
    logger.error(f"Database error while {action}: {exc}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed while {action}",
    )


@router.post(
    "/upload",
    summary="Upload a spreadsheet and start importing it",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportRunStatus,
)
async def upload_spreadsheet(
    file: UploadFile = File(...),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> ImportRunStatus:
    """Stage the uploaded file and return the new run without waiting for it."""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File is required",
        )
    suffix = Path(file.filename).suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only Excel (.xlsx, .xlsm) and CSV files are allowed",
        )

    max_bytes = get_settings().max_source_bytes
    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {max_bytes} byte limit",
        )

    try:
        staged_path = save_upload(BytesIO(content), file.filename)
    except OSError as exc:
        logger.error(f"OS error staging upload: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save uploaded file",
        ) from exc

    try:
        run = ingestion_runs.initiate_run(db, owner_id, file.filename, str(staged_path))
    except SQLAlchemyError as exc:
        db.rollback()
        delete_upload(staged_path)
        raise _server_error("creating the import run", exc) from exc

    return serialize_run(run)


@router.post(
    "/process-url",
    summary="Import a spreadsheet from a URL",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportRunStatus,
)
async def process_from_url(
    payload: ProcessUrlRequest,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> ImportRunStatus:
    """Start a background import of a remotely hosted spreadsheet."""
    parsed = urlparse(payload.file_url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid URL format",
        )

    file_name = (payload.file_name or "").strip() or DEFAULT_URL_FILE_NAME
    try:
        run = ingestion_runs.initiate_run(
            db, owner_id, file_name, payload.file_url.strip()
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise _server_error("creating the import run", exc) from exc
    return serialize_run(run)


@router.get(
    "/",
    summary="List import runs",
    response_model=ImportRunListResponse,
)
async def list_import_runs(
    params: FilterParams = Depends(get_filter_params),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> ImportRunListResponse:
    """Return the caller's runs, newest first, with optional single-field filter."""
    try:
        page = ingestion_runs.list_runs(db, owner_id, params)
    except InvalidFilterError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except SQLAlchemyError as exc:
        raise _server_error("listing import runs", exc) from exc

    return ImportRunListResponse(
        items=[serialize_run(run, fetch_progress(run.id)) for run in page.items],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
    )


@router.get(
    "/{run_id}",
    summary="Fetch one import run with its latest progress",
    response_model=ImportRunStatus,
)
async def get_import_run(
    run_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> ImportRunStatus:
    try:
        run = ingestion_runs.get_run(db, run_id, owner_id)
        product_count = ingestion_runs.count_products(db, run_id)
    except NotFoundOrForbiddenError as exc:
        raise _not_found(exc)
    except SQLAlchemyError as exc:
        raise _server_error("fetching the import run", exc) from exc
    return serialize_run(run, fetch_progress(run_id), product_count=product_count)


@router.post(
    "/{run_id}/retry",
    summary="Retry a failed import run",
    response_model=ImportRunStatus,
)
async def retry_import_run(
    run_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> ImportRunStatus:
    """Discard the run's products and process its source again from scratch."""
    try:
        run = ingestion_runs.retry_run(db, run_id, owner_id)
    except NotFoundOrForbiddenError as exc:
        raise _not_found(exc)
    except InvalidStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except SQLAlchemyError as exc:
        db.rollback()
        raise _server_error("retrying the import run", exc) from exc
    return serialize_run(run)


@router.get(
    "/{run_id}/products",
    summary="List products imported by a run",
    response_model=ImportedProductListResponse,
)
async def list_run_products(
    run_id: str,
    params: FilterParams = Depends(get_filter_params),
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> ImportedProductListResponse:
    try:
        page = ingestion_runs.list_records(db, run_id, owner_id, params)
    except NotFoundOrForbiddenError as exc:
        raise _not_found(exc)
    except InvalidFilterError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except SQLAlchemyError as exc:
        raise _server_error("listing imported products", exc) from exc

    return ImportedProductListResponse(
        items=[ImportedProductRead.model_validate(p) for p in page.items],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
    )


@router.get(
    "/{run_id}/stream",
    summary="Server-Sent Events stream of run progress",
)
async def stream_import_progress(
    run_id: str,
    owner_id: str = Depends(get_owner_id),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    """Push the run status as SSE ``data:`` events until it completes or fails."""
    try:
        ingestion_runs.get_run(db, run_id, owner_id)
    except NotFoundOrForbiddenError as exc:
        raise _not_found(exc)

    async def event_generator() -> AsyncGenerator[str, None]:
        # The request session closes when the handler returns; poll with our own.
        from app.db.session import SessionLocal

        session = SessionLocal()
        last_processed = -1
        idle_polls = 0
        try:
            while True:
                session.expire_all()
                try:
                    run = ingestion_runs.get_run(session, run_id, owner_id)
                except NotFoundOrForbiddenError:
                    yield 'event: error\ndata: {"error": "Import run not found"}\n\n'
                    break

                run_status = serialize_run(run, fetch_progress(run_id))
                yield f"data: {run_status.model_dump_json()}\n\n"

                if run.is_terminal:
                    yield "event: close\ndata: {}\n\n"
                    break

                if run.processed_rows != last_processed:
                    last_processed = run.processed_rows
                    idle_polls = 0
                else:
                    idle_polls += 1
                if idle_polls > STREAM_IDLE_LIMIT:
                    yield "event: timeout\ndata: {}\n\n"
                    break

                await asyncio.sleep(STREAM_POLL_SECONDS)
        finally:
            session.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
