"""Database models package."""
from app.db.models.import_run import ImportRun
from app.db.models.product import ImportedProduct

__all__ = ["ImportRun", "ImportedProduct"]
