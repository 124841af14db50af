"""
pawaPay aggregator adapter (API v2).

pawaPay fronts both Cameroonian operators; the operator is picked per
request from the phone prefix. Transaction ids are generated client-side
and double as verification tokens.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from ride_payments.core.enums import Provider, TransactionKind
from ride_payments.core.phone import detect_operator

from .base import ProviderAdapter, ProviderResult, ProviderStatus

logger = structlog.get_logger(__name__)

NETWORK_CODES = {
    Provider.MTN: "MTN_MOMO_CMR",
    Provider.ORANGE: "ORANGE_CMR",
}

ACCEPTED_SUBMISSION_STATUSES = frozenset({"ACCEPTED", "DUPLICATE_IGNORED"})

RESOURCES = {
    TransactionKind.PAYIN: ("deposits", "depositId"),
    TransactionKind.PAYOUT: ("payouts", "payoutId"),
    TransactionKind.REFUND: ("refunds", "refundId"),
}

# pawaPay limits customer messages to 4-22 characters
CUSTOMER_MESSAGE_MAX = 22


def _customer_message(reason: str) -> str:
    message = "".join(ch for ch in reason if ch.isalnum() or ch == " ").strip()
    message = message[:CUSTOMER_MESSAGE_MAX].strip()
    return message if len(message) >= 4 else "Ride payment"


def _failure_reason(body: Dict[str, Any]) -> Optional[str]:
    failure = body.get("failureReason")
    if isinstance(failure, dict):
        return failure.get("failureMessage") or failure.get("failureCode")
    return failure


class PawaPayClient(ProviderAdapter):
    """Adapter for the pawaPay deposits, payouts and refunds APIs."""

    provider = Provider.PAWAPAY

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.credentials.get('api_token', '')}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def network_code(phone: str) -> Optional[str]:
        """pawaPay provider code for the operator owning ``phone``."""
        operator = detect_operator(phone)
        return NETWORK_CODES.get(operator) if operator else None

    async def _submit(
        self, kind: TransactionKind, payload: Dict[str, Any]
    ) -> ProviderResult:
        resource, id_field = RESOURCES[kind]
        transaction_id = payload[id_field]
        response = await self._request(
            kind.value,
            "POST",
            f"{self.config.base_url}/v2/{resource}",
            json=payload,
            headers=self._headers(),
        )
        body = self._json(response)
        status = body.get("status")

        if response.is_success and status in ACCEPTED_SUBMISSION_STATUSES:
            logger.info(
                "pawapay_submission_accepted",
                operation=kind.value,
                transaction_id=transaction_id,
                status=status,
            )
            return ProviderResult(
                success=True,
                verification_token=transaction_id,
                message="Request accepted by pawaPay",
                provider_status=status,
                status_code=response.status_code,
                raw=body,
            )

        reason = _failure_reason(body) or f"pawaPay rejected the request ({response.status_code})"
        logger.warning(
            "pawapay_submission_rejected",
            operation=kind.value,
            transaction_id=transaction_id,
            status=status,
            reason=reason,
        )
        return ProviderResult(
            success=False,
            verification_token=None,
            message=reason,
            provider_status=status,
            status_code=response.status_code,
            raw=body,
        )

    def _account(self, phone: str) -> Dict[str, Any]:
        return {
            "type": "MMO",
            "accountDetails": {"phoneNumber": phone, "provider": self.network_code(phone)},
        }

    async def payin(self, phone: str, amount: Decimal, reason: str) -> ProviderResult:
        """Create a deposit (collection) from the payer's wallet."""
        if self.network_code(phone) is None:
            return ProviderResult(
                success=False,
                verification_token=None,
                message="Phone number does not belong to a supported operator",
            )
        payload = {
            "depositId": str(uuid.uuid4()),
            "payer": self._account(phone),
            "amount": str(int(Decimal(amount).to_integral_value())),
            "currency": self.config.currency,
            "customerMessage": _customer_message(reason),
        }
        return await self._submit(TransactionKind.PAYIN, payload)

    async def payout(
        self, phone: str, amount: Decimal, reason: str, currency: Optional[str] = None
    ) -> ProviderResult:
        """Create a payout to the recipient's wallet."""
        if self.network_code(phone) is None:
            return ProviderResult(
                success=False,
                verification_token=None,
                message="Phone number does not belong to a supported operator",
            )
        payload = {
            "payoutId": str(uuid.uuid4()),
            "recipient": self._account(phone),
            "amount": str(int(Decimal(amount).to_integral_value())),
            "currency": currency or self.config.currency,
            "customerMessage": _customer_message(reason),
        }
        return await self._submit(TransactionKind.PAYOUT, payload)

    async def refund(
        self,
        original_token: str,
        amount: Decimal,
        reason: str,
        phone: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> ProviderResult:
        """Refund part or all of a completed deposit."""
        payload = {
            "refundId": str(uuid.uuid4()),
            "depositId": original_token,
            "amount": str(int(Decimal(amount).to_integral_value())),
            "currency": currency or self.config.currency,
        }
        return await self._submit(TransactionKind.REFUND, payload)

    async def check_status(
        self, token: str, kind: TransactionKind = TransactionKind.PAYIN
    ) -> ProviderStatus:
        """Fetch a deposit, payout or refund by its id."""
        resource, _ = RESOURCES[kind]
        response = await self._request(
            f"{kind.value}_status",
            "GET",
            f"{self.config.base_url}/v2/{resource}/{token}",
            headers=self._headers(),
        )
        body = self._json(response)

        if response.status_code == 404 or body.get("status") == "NOT_FOUND":
            return ProviderStatus(provider_status=None, reason="Transaction not found", found=False)
        if not response.is_success:
            return ProviderStatus(
                provider_status=None,
                reason=_failure_reason(body) or f"Status check failed ({response.status_code})",
                found=False,
                raw=body,
            )

        # v2 wraps the transaction in {"status": "FOUND", "data": {...}}
        data = body.get("data") if isinstance(body.get("data"), dict) else body
        amount = data.get("amount")
        return ProviderStatus(
            provider_status=data.get("status"),
            reason=_failure_reason(data),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=data.get("currency"),
            financial_transaction_id=data.get("providerTransactionId"),
            raw=body,
        )
