"""Exception types raised by the import pipeline and its query helpers."""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for import pipeline failures."""


class FetchError(IngestionError):
    """Source file could not be retrieved (unreachable, timed out, too large)."""


class ParseError(IngestionError):
    """Source bytes are not a readable spreadsheet of the expected format."""


class WriteError(IngestionError):
    """Record store rejected a batch for a reason other than a duplicate key."""


class NotFoundOrForbiddenError(IngestionError):
    """Run does not exist or belongs to another owner."""

    def __init__(self, run_id: str) -> None:
        super().__init__("Import run not found or access denied")
        self.run_id = run_id


class InvalidStateError(IngestionError):
    """Operation is not allowed in the run's current status."""

    def __init__(self, run_id: str, status: str) -> None:
        super().__init__(f"Only failed imports can be retried (current status: {status})")
        self.run_id = run_id
        self.status = status


class InvalidFilterError(ValueError):
    """Filter or pagination parameters cannot be applied."""
