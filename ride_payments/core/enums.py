"""Shared enumerations for providers, transaction kinds and canonical statuses."""
from enum import Enum


class Provider(str, Enum):
    """Mobile-money providers the engine can route through."""

    MTN = "mtn"
    ORANGE = "orange"
    PAWAPAY = "pawapay"


class TransactionKind(str, Enum):
    """Direction of a money movement."""

    PAYIN = "payin"
    PAYOUT = "payout"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    """
    Canonical status vocabulary shared by payments, payouts and refunds.

    ``PARTIAL_REFUND`` only applies to payments.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_REFUND = "partial_refund"

    @property
    def is_terminal(self) -> bool:
        """Check if no further provider signal can move the record."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.PARTIAL_REFUND,
    }
)
