import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from ..database import Base


class InventoryCount(Base):
    """Current count of one product in one session (latest observation wins)."""
    __tablename__ = "inventory_counts"

    session_id = Column(
        UUID(as_uuid=True),
        ForeignKey("inventory_sessions.id", ondelete="CASCADE"),
        primary_key=True,
    )
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), primary_key=True)

    backup_units = Column(Integer, nullable=False, default=0)
    partial_fraction = Column(Float, nullable=False, default=0.0)
    expected_units = Column(Float, nullable=True)
    observed_at = Column(DateTime(timezone=True), nullable=False)
    idempotency_key = Column(Text, nullable=True)
    is_manual_estimate = Column(Boolean, nullable=False, default=False)
    revision = Column(Integer, nullable=False, default=1)

    session = relationship("InventorySession", back_populates="counts")


class InventoryCountRevision(Base):
    """Append-only history of every accepted observation."""
    __tablename__ = "inventory_count_revisions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(
        UUID(as_uuid=True),
        ForeignKey("inventory_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    revision = Column(Integer, nullable=False)

    backup_units = Column(Integer, nullable=False, default=0)
    partial_fraction = Column(Float, nullable=False, default=0.0)
    expected_units = Column(Float, nullable=True)
    observed_at = Column(DateTime(timezone=True), nullable=False)
    idempotency_key = Column(Text, nullable=True, index=True)
    is_manual_estimate = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("session_id", "product_id", "revision", name="ux_inventory_count_revisions_rev"),
    )
