"""Query parameters shared by paginated list endpoints."""

from fastapi import Query

from app.services.filtering import MAX_PAGE_SIZE, OPERATORS, FilterParams


def get_filter_params(
    field: str | None = Query(None, description="Field to filter on"),
    operator: str = Query("eq", description=f"One of: {', '.join(OPERATORS)}"),
    value: str | None = Query(None, description="Value compared against the field"),
    page: int = Query(1, ge=1, description="Page number (1-indexed)"),
    page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE, description="Items per page"),
) -> FilterParams:
    return FilterParams(
        field=field, operator=operator, value=value, page=page, page_size=page_size
    )
