import uuid

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from ..database import Base


class StockRecord(Base):
    __tablename__ = "stock_records"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mode_tag = Column(Text, nullable=False, index=True)  # 'production' | 'simulation'

    product_id = Column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    backup_count = Column(Integer, nullable=False, default=0)
    open_fraction = Column(Float, nullable=False, default=0.0)
    # version for compare-and-swap writes; bumped by every writer (receiving, POS sync, counts)
    last_modified_at = Column(DateTime(timezone=True), nullable=False)

    product = relationship("Product")

    __table_args__ = (
        UniqueConstraint("product_id", "mode_tag", name="ux_stock_records_product_mode"),
    )


class StockBatch(Base):
    """Reconciliation batches already applied (batch id = session id)."""
    __tablename__ = "stock_batches"

    id = Column(UUID(as_uuid=True), primary_key=True)
    mode_tag = Column(Text, nullable=False)
    writes = Column(Integer, nullable=False, default=0)
    applied_at = Column(DateTime(timezone=True), nullable=False)
    # per-product ProductReconciliation as JSON, returned when the batch is retried
    plan = Column(JSON, nullable=True)
