"""Track spreadsheet import runs and their progress counters."""

import uuid

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.db.base import Base

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)


class ImportRun(Base):
    __tablename__ = "import_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    source_locator = Column(Text, nullable=False)
    status = Column(String(32), nullable=False, default=STATUS_RUNNING, index=True)
    total_rows = Column(Integer)
    processed_rows = Column(Integer, nullable=False, default=0)
    # Bumped by every retry; workers only write to the attempt they started
    attempt = Column(Integer, nullable=False, default=1, server_default="1")
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    products = relationship(
        "ImportedProduct",
        back_populates="import_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> float | None:
        """Fraction of source rows processed, once the total is known."""
        if self.total_rows is None:
            return None
        if self.total_rows == 0:
            return 1.0 if self.status == STATUS_COMPLETED else 0.0
        return min(self.processed_rows / self.total_rows, 1.0)
