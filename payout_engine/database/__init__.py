"""Database package for the payout engine."""
from .connection import close_db, get_db, get_engine, get_session_factory, init_db
from .models import (
    Base,
    Campaign,
    ContentLink,
    PaymentMethod,
    PayoutStatus,
    Platform,
    Rail,
    Transaction,
    TransactionEvent,
    TransactionStatus,
    VerificationStatus,
    ViewTrackingRecord,
    WebhookEvent,
)

__all__ = [
    "Base",
    "Campaign",
    "ContentLink",
    "PaymentMethod",
    "PayoutStatus",
    "Platform",
    "Rail",
    "Transaction",
    "TransactionEvent",
    "TransactionStatus",
    "VerificationStatus",
    "ViewTrackingRecord",
    "WebhookEvent",
    "close_db",
    "get_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
