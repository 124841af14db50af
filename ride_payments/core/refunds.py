"""Refund amount rules for seat reductions."""
from decimal import Decimal
from typing import Tuple

from ride_payments.core.errors import PaymentValidationError

REFUND_PARTIAL = "partial"
REFUND_FULL = "full"


def calculate_seat_reduction_refund(
    seats_before: int, seats_after: int, price_per_seat: Decimal | int | str
) -> Decimal:
    """
    Amount owed back when a passenger gives up seats.

    Args:
        seats_before: Seats paid for
        seats_after: Seats kept (at least one)
        price_per_seat: Price paid per seat

    Returns:
        Decimal: ``(seats_before - seats_after) * price_per_seat``

    Raises:
        PaymentValidationError: If the reduction is not a real reduction
    """
    price = Decimal(str(price_per_seat))
    if price <= 0:
        raise PaymentValidationError("Price per seat must be positive")
    if seats_after < 1:
        raise PaymentValidationError("A booking must keep at least one seat")
    if seats_after >= seats_before:
        raise PaymentValidationError("New seat count must be lower than the current one")
    return (seats_before - seats_after) * price


def seat_reduction_reason(seats_before: int, seats_after: int) -> str:
    """Human-readable reason stored on the refund."""
    return f"Reduced from {seats_before} to {seats_after} seats"


def validate_refund_amount(
    amount: Decimal, payment_amount: Decimal, already_refunded: Decimal
) -> Tuple[Decimal, str]:
    """
    Check a refund against what is still refundable on a payment.

    Args:
        amount: Requested refund
        payment_amount: Original payment amount
        already_refunded: Sum of earlier refunds that have not failed

    Returns:
        Tuple[Decimal, str]: The amount and its refund type (partial or full)

    Raises:
        PaymentValidationError: If the refund is not positive or exceeds the remainder
    """
    amount = Decimal(str(amount))
    if amount <= 0:
        raise PaymentValidationError("Refund amount must be positive")

    refundable = Decimal(str(payment_amount)) - Decimal(str(already_refunded))
    if amount > refundable:
        raise PaymentValidationError(
            f"Refund amount {amount} exceeds refundable amount {refundable}"
        )

    refund_type = REFUND_FULL if amount == Decimal(str(payment_amount)) else REFUND_PARTIAL
    return amount, refund_type
