import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from ..database import Base


class InventorySession(Base):
    __tablename__ = "inventory_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    zone_id = Column(UUID(as_uuid=True), ForeignKey("zones.id", ondelete="RESTRICT"), nullable=False, index=True)

    mode_tag = Column(Text, nullable=False, index=True)  # 'production' | 'simulation'
    status = Column(Text, nullable=False, default="in_progress")  # 'in_progress' | 'completed' | 'cancelled'

    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # CompletionResult as JSON, returned again when a client retries complete
    completion = Column(JSON, nullable=True)

    zone = relationship("Zone")
    counts = relationship("InventoryCount", back_populates="session", cascade="all, delete-orphan")

    __table_args__ = (
        # at most one in-progress session per actor and mode
        Index(
            "ux_inventory_sessions_active_actor",
            "actor_id",
            "mode_tag",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
    )
