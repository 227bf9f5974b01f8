"""Entitlement model: a customer's cylinder balance and its annual window."""

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Entitlement(Base):
    """One row per customer. Never deleted."""

    __tablename__ = "entitlements"
    __mapper_args__ = {"eager_defaults": True}

    customer_id = Column(String, ForeignKey("users.id"), primary_key=True)
    balance = Column(Integer, nullable=False)
    expiry = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    customer = relationship("User", back_populates="entitlement")
    bookings = relationship("Booking", back_populates="entitlement")

    __table_args__ = (
        CheckConstraint("balance >= 0", name="check_entitlement_balance_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Entitlement(customer={self.customer_id}, balance={self.balance}, expiry={self.expiry})>"
