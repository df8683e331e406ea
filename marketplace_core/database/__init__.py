"""Database package for the marketplace core."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Booking,
    BookingStatus,
    NotificationStatus,
    Order,
    OrderStatus,
    OrderType,
    Partner,
    ScheduledNotification,
    UserProfile,
)

__all__ = [
    "Base",
    "Booking",
    "BookingStatus",
    "NotificationStatus",
    "Order",
    "OrderStatus",
    "OrderType",
    "Partner",
    "ScheduledNotification",
    "UserProfile",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
