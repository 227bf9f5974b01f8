"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


ROLE_CUSTOMER = "customer"
ROLE_ADMIN = "admin"


class User(Base):
    """Local mirror of an identity verified by the external identity provider."""

    __tablename__ = "users"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    role = Column(String, nullable=False, default=ROLE_CUSTOMER)  # customer, admin
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    entitlement = relationship("Entitlement", back_populates="customer", uselist=False)
