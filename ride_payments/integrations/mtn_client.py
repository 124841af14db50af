"""
MTN Mobile Money (MoMo) direct API adapter.

Implements:
- Collection (request-to-pay) for payins
- Disbursement transfers for payouts and refunds
- Per-product access tokens cached until shortly before expiry
"""
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog

from ride_payments.core.enums import Provider, TransactionKind
from ride_payments.core.status import sanitize_reason

from .base import (
    ProviderAdapter,
    ProviderAuthError,
    ProviderResult,
    ProviderStatus,
)

logger = structlog.get_logger(__name__)

COLLECTION = "collection"
DISBURSEMENT = "disbursement"

# Refresh tokens this long before MTN says they expire
TOKEN_EXPIRY_MARGIN_SECONDS = 60

STATUS_PATHS = {
    TransactionKind.PAYIN: (COLLECTION, "/collection/v1_0/requesttopay/{token}"),
    TransactionKind.PAYOUT: (DISBURSEMENT, "/disbursement/v1_0/transfer/{token}"),
    TransactionKind.REFUND: (DISBURSEMENT, "/disbursement/v1_0/refund/{token}"),
}


class MTNMoMoClient(ProviderAdapter):
    """
    Adapter for the MTN MoMo Collection and Disbursement APIs.

    The ``X-Reference-Id`` generated for each submission doubles as the
    verification token used for status checks and callback correlation.
    """

    provider = Provider.MTN

    def __init__(self, *args: Any, **kwargs: Any):
        """Initialize MTN MoMo client."""
        super().__init__(*args, **kwargs)
        self._tokens: Dict[str, Tuple[str, float]] = {}

    @property
    def target_environment(self) -> str:
        """Value of the X-Target-Environment header."""
        return "sandbox" if self.config.sandbox else "mtncameroon"

    def _credentials(self, product: str) -> Tuple[str, str, str]:
        creds = self.config.credentials
        return (
            creds.get(f"{product}_user_id", ""),
            creds.get(f"{product}_api_key", ""),
            creds.get(f"{product}_subscription_key", ""),
        )

    async def _get_access_token(self, product: str) -> str:
        """
        Get a cached access token for a MoMo product.

        Args:
            product: ``collection`` or ``disbursement``

        Returns:
            str: Bearer token

        Raises:
            ProviderAuthError: If MTN refuses the API user credentials
        """
        cached = self._tokens.get(product)
        if cached and cached[1] > time.time():
            return cached[0]

        user_id, api_key, subscription_key = self._credentials(product)
        response = await self._request(
            f"{product}_token",
            "POST",
            f"{self.config.base_url}/{product}/token/",
            auth=(user_id, api_key),
            headers={"Ocp-Apim-Subscription-Key": subscription_key},
        )
        body = self._json(response)
        if response.status_code != 200 or "access_token" not in body:
            logger.error(
                "mtn_token_request_failed",
                product=product,
                status_code=response.status_code,
            )
            raise ProviderAuthError(f"MTN {product} token request failed ({response.status_code})")

        expires_in = int(body.get("expires_in", 3600))
        self._tokens[product] = (
            body["access_token"],
            time.time() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0),
        )
        logger.info("mtn_token_refreshed", product=product, expires_in=expires_in)
        return body["access_token"]

    async def _headers(
        self, product: str, reference_id: Optional[str] = None, callback_url: Optional[str] = None
    ) -> Dict[str, str]:
        _, _, subscription_key = self._credentials(product)
        headers = {
            "Authorization": f"Bearer {await self._get_access_token(product)}",
            "X-Target-Environment": self.target_environment,
            "Ocp-Apim-Subscription-Key": subscription_key,
            "Content-Type": "application/json",
        }
        if reference_id:
            headers["X-Reference-Id"] = reference_id
        if callback_url:
            headers["X-Callback-Url"] = callback_url
        return headers

    def _amount(self, amount: Decimal) -> str:
        # XAF has no minor unit; MTN expects a plain integer string
        return str(int(Decimal(amount).to_integral_value()))

    async def _submit(
        self,
        operation: str,
        product: str,
        path: str,
        payload: Dict[str, Any],
        callback_url: Optional[str],
    ) -> ProviderResult:
        reference_id = str(uuid.uuid4())
        payload.setdefault("externalId", reference_id)
        try:
            headers = await self._headers(product, reference_id, callback_url)
        except ProviderAuthError as e:
            return ProviderResult(success=False, verification_token=None, message=str(e))

        response = await self._request(
            operation, "POST", f"{self.config.base_url}{path}", json=payload, headers=headers
        )

        if response.status_code == 202:
            logger.info("mtn_submission_accepted", operation=operation, reference_id=reference_id)
            return ProviderResult(
                success=True,
                verification_token=reference_id,
                message="Request accepted by MTN MoMo",
                provider_status="PENDING",
                status_code=response.status_code,
                raw={"reference_id": reference_id, **payload},
            )

        body = self._json(response)
        message = sanitize_reason(body.get("message") or body.get("code")) or (
            f"MTN MoMo rejected the request ({response.status_code})"
        )
        logger.warning(
            "mtn_submission_rejected",
            operation=operation,
            status_code=response.status_code,
            code=body.get("code"),
        )
        return ProviderResult(
            success=False,
            verification_token=None,
            message=message,
            provider_status=body.get("code"),
            status_code=response.status_code,
            raw=body,
        )

    async def payin(self, phone: str, amount: Decimal, reason: str) -> ProviderResult:
        """Request a payment from the payer's MoMo wallet."""
        payload = {
            "amount": self._amount(amount),
            "currency": self.config.currency,
            "payer": {"partyIdType": "MSISDN", "partyId": phone},
            "payerMessage": reason,
            "payeeNote": reason,
        }
        return await self._submit(
            "payin", COLLECTION, "/collection/v1_0/requesttopay", payload, self.config.callback_url
        )

    async def payout(
        self, phone: str, amount: Decimal, reason: str, currency: Optional[str] = None
    ) -> ProviderResult:
        """Transfer funds to the payee's MoMo wallet."""
        payload = {
            "amount": self._amount(amount),
            # The sandbox only settles in EUR whatever the caller asks for
            "currency": self.config.currency if self.config.sandbox else (
                currency or self.config.currency
            ),
            "payee": {"partyIdType": "MSISDN", "partyId": phone},
            "payerMessage": reason,
            "payeeNote": reason,
        }
        return await self._submit(
            "payout",
            DISBURSEMENT,
            "/disbursement/v1_0/transfer",
            payload,
            self.config.payout_callback_url,
        )

    async def refund(
        self,
        original_token: str,
        amount: Decimal,
        reason: str,
        phone: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> ProviderResult:
        """Refund part of a completed request-to-pay."""
        payload = {
            "amount": self._amount(amount),
            "currency": self.config.currency if self.config.sandbox else (
                currency or self.config.currency
            ),
            "payerMessage": reason,
            "payeeNote": reason,
            "referenceIdToRefund": original_token,
        }
        # externalId is left to _submit so the callback carries the refund's own reference
        return await self._submit(
            "refund",
            DISBURSEMENT,
            "/disbursement/v1_0/refund",
            payload,
            self.config.refund_callback_url or self.config.callback_url,
        )

    async def check_status(
        self, token: str, kind: TransactionKind = TransactionKind.PAYIN
    ) -> ProviderStatus:
        """Fetch the status of a request-to-pay, transfer or refund."""
        product, path = STATUS_PATHS[kind]
        try:
            headers = await self._headers(product)
        except ProviderAuthError as e:
            return ProviderStatus(provider_status=None, reason=str(e), found=False)

        response = await self._request(
            f"{kind.value}_status",
            "GET",
            f"{self.config.base_url}{path.format(token=token)}",
            headers=headers,
        )
        body = self._json(response)

        if response.status_code == 404:
            return ProviderStatus(provider_status=None, reason="Transaction not found", found=False)
        if response.status_code != 200:
            return ProviderStatus(
                provider_status=None,
                reason=sanitize_reason(body.get("message")),
                found=False,
                raw=body,
            )

        reason = body.get("reason")
        if isinstance(reason, dict):
            reason = reason.get("message") or reason.get("code")

        return ProviderStatus(
            provider_status=body.get("status"),
            reason=sanitize_reason(reason),
            amount=Decimal(str(body["amount"])) if body.get("amount") is not None else None,
            currency=body.get("currency"),
            financial_transaction_id=body.get("financialTransactionId"),
            raw=body,
        )
