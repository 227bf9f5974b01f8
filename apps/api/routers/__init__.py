"""Routers package."""

from . import (
    health,
    auth,
    bookings,
    payments,
    admin,
)
