"""Database package for memberpay."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    Base,
    Commission,
    ListingFee,
    Payment,
    PaymentAttempt,
    PaymentEvent,
    Subscription,
    TokenSubscription,
    TokenTransaction,
    User,
)

__all__ = [
    "Base",
    "Commission",
    "ListingFee",
    "Payment",
    "PaymentAttempt",
    "PaymentEvent",
    "Subscription",
    "TokenSubscription",
    "TokenTransaction",
    "User",
    "close_db",
    "get_session_factory",
    "init_db",
]
