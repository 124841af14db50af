"""
Driver payout fees.

Driver earnings = fare - transaction fee - commission, where the transaction
fee is a percentage of the fare plus a flat amount and the commission is a
percentage of the fare. Earnings never go below zero.

Fees are rounded half-up to whole currency units (XAF has no minor unit)
and the driver gets whatever remains of the fare.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from ride_payments.config import Settings, get_settings

HUNDRED = Decimal("100")
UNIT = Decimal("1")


@dataclass(frozen=True)
class FeeBreakdown:
    """How a fare is split between the driver and the platform."""

    original_amount: Decimal
    transaction_fee: Decimal
    commission: Decimal
    driver_earnings: Decimal
    transaction_fee_rate: Decimal
    commission_rate: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "originalAmount": str(self.original_amount),
            "transactionFee": str(self.transaction_fee),
            "commission": str(self.commission),
            "driverEarnings": str(self.driver_earnings),
            "transactionFeeRate": str(self.transaction_fee_rate),
            "commissionRate": str(self.commission_rate),
        }


class FeeCalculator:
    """Applies the configured fee schedule to driver payouts."""

    def __init__(
        self,
        transaction_fee_rate: Any = 0,
        transaction_fee_fixed: Any = 0,
        commission_rate: Any = 0,
    ):
        """
        Initialize fee calculator.

        Args:
            transaction_fee_rate: Transaction fee in percent (1.5 means 1.5%)
            transaction_fee_fixed: Flat transaction fee per payout
            commission_rate: Commission in percent
        """
        self.transaction_fee_rate = Decimal(str(transaction_fee_rate))
        self.transaction_fee_fixed = Decimal(str(transaction_fee_fixed))
        self.commission_rate = Decimal(str(commission_rate))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "FeeCalculator":
        settings = settings or get_settings()
        return cls(
            transaction_fee_rate=settings.transaction_fee_rate,
            transaction_fee_fixed=settings.transaction_fee_fixed,
            commission_rate=settings.commission_rate,
        )

    def calculate(self, amount: Any) -> FeeBreakdown:
        """
        Split a fare into fees and driver earnings.

        Args:
            amount: Fare collected for the booking

        Returns:
            FeeBreakdown: Fees and what the driver is paid
        """
        original = Decimal(str(amount))
        transaction_fee = (
            original * self.transaction_fee_rate / HUNDRED + self.transaction_fee_fixed
        ).quantize(UNIT, rounding=ROUND_HALF_UP)
        commission = (original * self.commission_rate / HUNDRED).quantize(
            UNIT, rounding=ROUND_HALF_UP
        )
        earnings = max(Decimal("0"), original - transaction_fee - commission)

        return FeeBreakdown(
            original_amount=original,
            transaction_fee=transaction_fee,
            commission=commission,
            driver_earnings=earnings,
            transaction_fee_rate=self.transaction_fee_rate,
            commission_rate=self.commission_rate,
        )
