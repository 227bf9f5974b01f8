"""Every gateway order issued for a booking, including ones replaced by a retry."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class GatewayOrder(Base):
    """Maps a gateway ``order_id`` back to its booking and payment attempt.

    ``Booking.gateway_order_id`` only holds the current order. Callbacks for
    older orders are resolved through this table so they can be acknowledged
    as stale instead of being dropped.
    """

    __tablename__ = "gateway_orders"

    order_id = Column(String, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    payment_attempt = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    booking = relationship("Booking", back_populates="gateway_orders")
