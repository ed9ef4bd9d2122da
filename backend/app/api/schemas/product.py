"""Pydantic models describing imported product payloads."""

from datetime import datetime

from pydantic import BaseModel


class ImportedProductRead(BaseModel):
    id: int
    import_run_id: str
    name: str
    category: str
    price: float
    stock: int
    description: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class ImportedProductListResponse(BaseModel):
    items: list[ImportedProductRead]
    total: int
    page: int
    page_size: int
