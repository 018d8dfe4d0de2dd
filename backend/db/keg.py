import uuid
from sqlalchemy import Column, DateTime, Float, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base

# Standard 1/2 barrel, 15.5 gal
HALF_BARREL_OZ = 1984.0


class Keg(Base):
    __tablename__ = "kegs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    mode_tag = Column(Text, nullable=False, index=True, default="production")  # 'production' | 'simulation'

    status = Column(Text, nullable=False, default="on_deck")  # 'on_deck' | 'tapped' | 'kicked'
    initial_volume = Column(Float, nullable=False, default=HALF_BARREL_OZ)
    remaining_volume = Column(Float, nullable=False, default=HALF_BARREL_OZ)

    # tap sensor id while the keg is tapped
    tap_id = Column(Text, nullable=True, index=True)

    date_received = Column(DateTime(timezone=True), nullable=True)
    date_tapped = Column(DateTime(timezone=True), nullable=True)
    date_kicked = Column(DateTime(timezone=True), nullable=True)

    product = relationship("Product", back_populates="kegs")
