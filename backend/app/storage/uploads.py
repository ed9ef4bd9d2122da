"""Local staging of uploaded spreadsheets."""

from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path
from typing import BinaryIO

from app.core.config import get_settings

logger = logging.getLogger(__name__)


def uploads_dir() -> Path:
    path = Path(get_settings().uploads_dir).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_upload(file_obj: BinaryIO, original_name: str | None = None) -> Path:
    """Persist an uploaded spreadsheet under a random name and return its path."""
    suffix = Path(original_name or "upload.xlsx").suffix.lower() or ".xlsx"
    target_path = uploads_dir() / f"{uuid.uuid4()}{suffix}"
    file_obj.seek(0)
    with target_path.open("wb") as destination:
        shutil.copyfileobj(file_obj, destination)
    logger.info(f"Staged upload {original_name!r} at {target_path.name}")
    return target_path


def delete_upload(uri: str | Path) -> None:
    """Remove a staged file; missing files are ignored."""
    path = Path(uri).resolve()
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Failed to delete staged upload {path.name}: {e}")
