"""Import run request and status payloads."""

from datetime import datetime

from pydantic import BaseModel, Field


class ProcessUrlRequest(BaseModel):
    file_url: str = Field(..., description="http(s) URL of the spreadsheet")
    file_name: str | None = Field(None, max_length=255)


class ImportRunStatus(BaseModel):
    id: str
    owner_id: str
    file_name: str
    status: str = Field(..., description="running|completed|failed")
    progress: float | None = Field(None, description="0-1 range for UI progress bars")
    message: str | None = None
    total_rows: int | None = None
    processed_rows: int = 0
    attempt: int = 1
    product_count: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    meta: dict | None = None


class ImportRunListResponse(BaseModel):
    items: list[ImportRunStatus]
    total: int
    page: int
    page_size: int
