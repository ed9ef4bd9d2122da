"""SQLAlchemy model for products imported from a spreadsheet run."""

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import DateTime

from app.db.base import Base

PRODUCT_IDENTITY_CONSTRAINT = "uq_imported_products_run_name_category"


class ImportedProduct(Base):
    __tablename__ = "imported_products"

    id = Column(Integer, primary_key=True)
    import_run_id = Column(
        String(36),
        ForeignKey("import_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    category = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    import_run = relationship("ImportRun", back_populates="products")

    __table_args__ = (
        UniqueConstraint(
            "import_run_id", "name", "category", name=PRODUCT_IDENTITY_CONSTRAINT
        ),
    )
