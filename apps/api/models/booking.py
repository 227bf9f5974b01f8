"""Booking model for cylinder orders."""

import enum
import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


# Fixed per booking; the table check constraint enforces the same range.
MIN_CYLINDERS_PER_BOOKING = 1
MAX_CYLINDERS_PER_BOOKING = 5


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELIVERED = "DELIVERED"


class PaymentMethod(str, enum.Enum):
    GATEWAY = "GATEWAY"
    COD = "COD"
    QR = "QR"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Booking(Base):
    """A single cylinder order with its lifecycle and payment state."""

    __tablename__ = "bookings"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = Column(String, ForeignKey("entitlements.customer_id"), nullable=False, index=True)
    cylinder_count = Column(Integer, nullable=False)
    delivery_address = Column(String, nullable=False)
    delivery_date = Column(Date, nullable=False)
    booking_status = Column(String, nullable=False, default=BookingStatus.PENDING.value, index=True)
    payment_method = Column(String, nullable=False)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    payment_reference = Column(String, nullable=True)
    gateway_order_id = Column(String, nullable=True, unique=True, index=True)
    qr_screenshot_ref = Column(String, nullable=True)
    balance_deducted = Column(Boolean, nullable=False, default=False)
    payment_attempt = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    entitlement = relationship("Entitlement", back_populates="bookings")
    reconciliations = relationship("PaymentReconciliation", back_populates="booking")
    gateway_orders = relationship("GatewayOrder", back_populates="booking")

    __table_args__ = (
        CheckConstraint(
            f"cylinder_count BETWEEN {MIN_CYLINDERS_PER_BOOKING} AND {MAX_CYLINDERS_PER_BOOKING}",
            name="check_booking_cylinder_count",
        ),
        CheckConstraint(
            "NOT (payment_status = 'SUCCESS' AND booking_status = 'REJECTED')",
            name="check_booking_paid_not_rejected",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, customer={self.customer_id}, "
            f"status={self.booking_status}, payment={self.payment_status})>"
        )
