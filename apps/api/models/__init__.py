"""Models package."""

from .user import User
from .entitlement import Entitlement
from .booking import Booking, BookingStatus, PaymentMethod, PaymentStatus
from .payment_reconciliation import PaymentReconciliation
from .gateway_order import GatewayOrder
from .log_entry import LogEntry
