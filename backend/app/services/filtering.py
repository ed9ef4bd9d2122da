"""Generic single-field filtering and pagination for list endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Generic, Sequence, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from app.core.errors import InvalidFilterError

T = TypeVar("T")

OPERATORS = ("eq", "ne", "contains", "gt", "gte", "lt", "lte")
MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class FilterParams:
    field: str | None = None
    operator: str = "eq"
    value: str | None = None
    page: int = 1
    page_size: int = 50


@dataclass
class Page(Generic[T]):
    items: Sequence[T]
    total: int
    page: int
    page_size: int


def _coerce(column, raw: str) -> Any:
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return raw
    try:
        if python_type is bool:
            lowered = raw.strip().lower()
            if lowered not in ("true", "false", "1", "0"):
                raise ValueError(raw)
            return lowered in ("true", "1")
        if python_type is int:
            return int(raw)
        if python_type is float:
            return float(raw)
        if python_type is Decimal:
            return Decimal(raw)
        if python_type is datetime:
            return datetime.fromisoformat(raw)
    except (ValueError, InvalidOperation) as exc:
        raise InvalidFilterError(
            f"Value '{raw}' is not valid for field '{column.key}'"
        ) from exc
    return raw


def apply_filter(
    query: Select, model: type, params: FilterParams, allowed_fields: Sequence[str]
) -> Select:
    """Add the WHERE clause described by ``params`` to ``query``."""
    if not params.field:
        return query
    if params.field not in allowed_fields:
        raise InvalidFilterError(
            f"Cannot filter on '{params.field}'; allowed: {', '.join(allowed_fields)}"
        )
    if params.operator not in OPERATORS:
        raise InvalidFilterError(
            f"Unknown operator '{params.operator}'; allowed: {', '.join(OPERATORS)}"
        )
    if params.value is None:
        raise InvalidFilterError("A filter value is required when a field is given")

    column = getattr(model, params.field)
    if params.operator == "contains":
        return query.where(column.ilike(f"%{params.value}%"))

    value = _coerce(column, params.value)
    if params.operator == "eq":
        return query.where(column == value)
    if params.operator == "ne":
        return query.where(column != value)
    if params.operator == "gt":
        return query.where(column > value)
    if params.operator == "gte":
        return query.where(column >= value)
    if params.operator == "lt":
        return query.where(column < value)
    return query.where(column <= value)


def paginate(db: Session, query: Select, params: FilterParams, *order_by) -> Page:
    """Execute ``query`` for one page and count all matching rows."""
    if params.page < 1:
        raise InvalidFilterError("page must be >= 1")
    if not 1 <= params.page_size <= MAX_PAGE_SIZE:
        raise InvalidFilterError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

    total = db.scalar(select(func.count()).select_from(query.subquery())) or 0
    offset = (params.page - 1) * params.page_size
    items = db.scalars(
        query.order_by(*order_by).offset(offset).limit(params.page_size)
    ).all()
    return Page(items=items, total=total, page=params.page, page_size=params.page_size)
