import uuid
from sqlalchemy import Boolean, Column, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from .database import Base


class Product(Base):
    __tablename__ = "products"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    upc = Column(String, nullable=True, unique=True)

    # kegs are sold by volume; bottles and cans by the unit
    is_sold_by_volume = Column(Boolean, nullable=False, default=False)
    container_size_ml = Column(Integer, nullable=True)

    kegs = relationship("Keg", back_populates="product", cascade="all, delete-orphan")
