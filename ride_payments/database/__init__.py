"""Database package for ride payments."""
from .connection import get_db, get_session_factory, init_db
from .models import (
    Base,
    Payment,
    Payout,
    ReconciliationRun,
    Refund,
    TransactionEvent,
)

__all__ = [
    "Base",
    "Payment",
    "Payout",
    "Refund",
    "TransactionEvent",
    "ReconciliationRun",
    "get_db",
    "get_session_factory",
    "init_db",
]
