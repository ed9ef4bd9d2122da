"""Insert-or-skip persistence of product batches for one import run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import delete, insert, select, tuple_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import WriteError
from app.db.models.product import ImportedProduct

logger = logging.getLogger(__name__)

IDENTITY_COLUMNS = ("import_run_id", "name", "category")


@dataclass(frozen=True)
class BatchStats:
    inserted: int = 0
    duplicates: int = 0


def _identity(record: dict[str, Any]) -> tuple[str, str]:
    return record["name"], record["category"]


def dedupe_records(records: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep the first record for each (name, category) identity, in order."""
    seen: set[tuple[str, str]] = set()
    unique: list[dict[str, Any]] = []
    for record in records:
        key = _identity(record)
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def _insert_ignoring_conflicts(db: Session, rows: list[dict[str, Any]]) -> int:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(ImportedProduct).values(rows)
    elif dialect == "sqlite":
        stmt = sqlite.insert(ImportedProduct).values(rows)
    else:
        return _insert_missing(db, rows)
    stmt = stmt.on_conflict_do_nothing(index_elements=list(IDENTITY_COLUMNS))
    result = db.execute(stmt)
    return max(result.rowcount or 0, 0)


def _insert_missing(db: Session, rows: list[dict[str, Any]]) -> int:
    """Fallback for stores without ON CONFLICT: filter out existing keys first."""
    run_id = rows[0]["import_run_id"]
    keys = [_identity(row) for row in rows]
    existing = set(
        db.execute(
            select(ImportedProduct.name, ImportedProduct.category).where(
                ImportedProduct.import_run_id == run_id,
                tuple_(ImportedProduct.name, ImportedProduct.category).in_(keys),
            )
        ).all()
    )
    fresh = [row for row in rows if _identity(row) not in existing]
    if fresh:
        db.execute(insert(ImportedProduct), fresh)
    return len(fresh)


def write_batch(
    db: Session, run_id: str, records: list[dict[str, Any]]
) -> BatchStats:
    """Stage one batch of product payloads for ``run_id``.

    Records whose (name, category) already exists in the run, or repeats
    earlier in the same batch, are skipped. The caller commits, so the batch
    and its progress checkpoint land in one transaction.

    Raises:
        WriteError: the store rejected the batch for any other reason.
    """
    if not records:
        return BatchStats()

    unique = dedupe_records(records)
    rows = [{**record, "import_run_id": run_id} for record in unique]
    try:
        inserted = _insert_ignoring_conflicts(db, rows)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Database error writing batch for run {run_id}: {exc}", exc_info=True)
        raise WriteError(f"Failed to save products: {exc.__class__.__name__}: {exc}") from exc

    stats = BatchStats(inserted=inserted, duplicates=len(records) - inserted)
    if stats.duplicates:
        logger.info(f"Run {run_id}: skipped {stats.duplicates} duplicate products in batch")
    return stats


def delete_run_products(db: Session, run_id: str) -> int:
    """Remove every product previously written for ``run_id`` (not committed)."""
    result = db.execute(
        delete(ImportedProduct).where(ImportedProduct.import_run_id == run_id)
    )
    return max(result.rowcount or 0, 0)
