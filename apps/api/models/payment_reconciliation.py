"""Idempotency record for applied payment outcomes."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PaymentReconciliation(Base):
    """One row per applied outcome.

    ``idempotency_key`` is ``<booking id>:<outcome type>:<payment attempt>``.
    The attempt counter moves on when a failed payment is retried, so a fresh
    attempt can be reconciled while replays of an old one stay no-ops.
    """

    __tablename__ = "payment_reconciliations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    idempotency_key = Column(String, nullable=False, unique=True)
    booking_id = Column(String, ForeignKey("bookings.id"), nullable=False, index=True)
    outcome_type = Column(String, nullable=False)
    reference = Column(String, nullable=True)
    actor_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    booking = relationship("Booking", back_populates="reconciliations")
