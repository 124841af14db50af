"""Exception hierarchy for payment orchestration."""


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when a request is rejected before anything is sent upstream."""

    pass


class PhoneNumberError(PaymentValidationError):
    """Raised when a phone number is malformed or outside the provider's numbering plan."""

    pass


class RecordNotFoundError(PaymentError):
    """Raised when a payment, payout or refund cannot be resolved."""

    pass


class ReconciliationRiskError(PaymentError):
    """
    Raised when a provider accepted a submission but the local write failed.

    Money may be in flight with no local record, so this must reach an operator.
    """

    def __init__(self, message: str, provider: str, transaction_token: str | None):
        """
        Initialize reconciliation risk error.

        Args:
            message: Error message
            provider: Provider that accepted the submission
            transaction_token: Token returned by the provider
        """
        super().__init__(message)
        self.provider = provider
        self.transaction_token = transaction_token
