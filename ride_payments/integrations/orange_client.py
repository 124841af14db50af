"""
Orange Money Cameroon direct API adapter.

Payins go through the merchant payment flow (``mp/init`` then ``mp/pay``)
and payouts through cash-in (``cashin/init`` then ``cashin/pay``). Orange
has no refund endpoint, so refunds are cash-ins back to the payer.
"""
import base64
import secrets
import string
import time
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog

from ride_payments.core.enums import Provider, TransactionKind
from ride_payments.core.phone import national_number
from ride_payments.core.status import sanitize_reason

from .base import ProviderAdapter, ProviderAuthError, ProviderResult, ProviderStatus

logger = structlog.get_logger(__name__)

TOKEN_EXPIRY_MARGIN_SECONDS = 60
ORDER_ID_LENGTH = 15

# Merchant payment for payins, cash-in for everything paid out
FLOWS = {
    TransactionKind.PAYIN: "mp",
    TransactionKind.PAYOUT: "cashin",
    TransactionKind.REFUND: "cashin",
}


def generate_order_id(length: int = ORDER_ID_LENGTH) -> str:
    """Random alphanumeric merchant order id."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class OrangeMoneyClient(ProviderAdapter):
    """
    Adapter for the Orange Money Web Payment API.

    The ``payToken`` obtained from the init call is the verification token.
    """

    provider = Provider.ORANGE

    def __init__(self, *args: Any, **kwargs: Any):
        """Initialize Orange Money client."""
        super().__init__(*args, **kwargs)
        self._token: Optional[Tuple[str, float]] = None

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{path}"

    async def _get_access_token(self) -> str:
        """
        Get a cached client-credentials access token.

        Raises:
            ProviderAuthError: If Orange refuses the consumer credentials
        """
        if self._token and self._token[1] > time.time():
            return self._token[0]

        creds = self.config.credentials
        basic = base64.b64encode(
            f"{creds.get('consumer_key', '')}:{creds.get('consumer_secret', '')}".encode()
        ).decode()
        response = await self._request(
            "token",
            "POST",
            creds.get("token_url", ""),
            data={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {basic}"},
        )
        body = self._json(response)
        if response.status_code != 200 or "access_token" not in body:
            logger.error("orange_token_request_failed", status_code=response.status_code)
            raise ProviderAuthError(f"Orange token request failed ({response.status_code})")

        expires_in = int(body.get("expires_in", 3600))
        self._token = (
            body["access_token"],
            time.time() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0),
        )
        return body["access_token"]

    async def _headers(self) -> Dict[str, str]:
        creds = self.config.credentials
        auth_token = base64.b64encode(
            f"{creds.get('api_username', '')}:{creds.get('api_password', '')}".encode()
        ).decode()
        return {
            "Authorization": f"Bearer {await self._get_access_token()}",
            "X-AUTH-TOKEN": auth_token,
            "Content-Type": "application/json",
        }

    async def _two_step(
        self, kind: TransactionKind, phone: str, amount: Decimal, description: str
    ) -> ProviderResult:
        """
        Run the init/pay pair of a merchant payment or cash-in.

        Args:
            kind: PAYIN for merchant payments, PAYOUT or REFUND for cash-ins
            phone: Normalised subscriber number
            amount: Amount to move
            description: Text shown to the subscriber

        Returns:
            ProviderResult: Accepted with the payToken, or the rejection
        """
        flow = FLOWS[kind]
        try:
            headers = await self._headers()
        except ProviderAuthError as e:
            return ProviderResult(success=False, verification_token=None, message=str(e))

        init_response = await self._request(
            f"{kind.value}_init", "POST", self._url(f"{flow}/init"), headers=headers
        )
        init_body = self._json(init_response)
        pay_token = (init_body.get("data") or {}).get("payToken")
        if init_response.status_code != 200 or not pay_token:
            return ProviderResult(
                success=False,
                verification_token=None,
                message=sanitize_reason(init_body.get("message"))
                or f"Orange Money init failed ({init_response.status_code})",
                status_code=init_response.status_code,
                raw=init_body,
            )

        creds = self.config.credentials
        callback_url = (
            self.config.callback_url if kind is TransactionKind.PAYIN
            else self.config.payout_callback_url
        )
        payload = {
            "notifUrl": callback_url,
            "channelUserMsisdn": creds.get("merchant_number", ""),
            "amount": str(int(Decimal(amount).to_integral_value())),
            "subscriberMsisdn": national_number(phone),
            "pin": creds.get("pin_code", ""),
            "orderId": generate_order_id(),
            "description": description,
            "payToken": pay_token,
        }
        pay_response = await self._request(
            kind.value, "POST", self._url(f"{flow}/pay"), json=payload, headers=headers
        )
        pay_body = self._json(pay_response)
        data = pay_body.get("data") or {}

        if pay_response.status_code != 200:
            logger.warning(
                "orange_submission_rejected",
                operation=kind.value,
                status_code=pay_response.status_code,
                pay_token=pay_token,
            )
            return ProviderResult(
                success=False,
                verification_token=pay_token,
                message=sanitize_reason(pay_body.get("message") or data.get("inittxnmessage"))
                or f"Orange Money rejected the request ({pay_response.status_code})",
                provider_status=data.get("status"),
                status_code=pay_response.status_code,
                raw=pay_body,
            )

        logger.info("orange_submission_accepted", operation=kind.value, pay_token=pay_token)
        return ProviderResult(
            success=True,
            verification_token=pay_token,
            message=(
                sanitize_reason(data.get("inittxnmessage")) or "Request accepted by Orange Money"
            ),
            provider_status=data.get("status"),
            status_code=pay_response.status_code,
            raw={"order_id": payload["orderId"], **pay_body},
        )

    async def payin(self, phone: str, amount: Decimal, reason: str) -> ProviderResult:
        """Start a merchant payment the subscriber confirms with their PIN."""
        return await self._two_step(TransactionKind.PAYIN, phone, amount, reason)

    async def payout(
        self, phone: str, amount: Decimal, reason: str, currency: Optional[str] = None
    ) -> ProviderResult:
        """Cash in ``amount`` to the subscriber's wallet."""
        return await self._two_step(TransactionKind.PAYOUT, phone, amount, reason)

    async def refund(
        self,
        original_token: str,
        amount: Decimal,
        reason: str,
        phone: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> ProviderResult:
        """Cash the refunded amount back to the original payer."""
        if not phone:
            return ProviderResult(
                success=False,
                verification_token=None,
                message="Orange Money refunds need the payer's phone number",
            )
        return await self._two_step(
            TransactionKind.REFUND, phone, amount, f"{reason} (ref {original_token})"
        )

    async def check_status(
        self, token: str, kind: TransactionKind = TransactionKind.PAYIN
    ) -> ProviderStatus:
        """Fetch the status of a merchant payment or cash-in by payToken."""
        try:
            headers = await self._headers()
        except ProviderAuthError as e:
            return ProviderStatus(provider_status=None, reason=str(e), found=False)

        response = await self._request(
            f"{kind.value}_status",
            "GET",
            self._url(f"{FLOWS[kind]}/paymentstatus/{token}"),
            headers=headers,
        )
        body = self._json(response)
        data = body.get("data") or {}

        if response.status_code != 200 or not data:
            return ProviderStatus(
                provider_status=None,
                reason=sanitize_reason(body.get("message")) or "Transaction not found",
                found=False,
                raw=body,
            )

        amount = data.get("amount")
        return ProviderStatus(
            provider_status=data.get("status"),
            reason=sanitize_reason(data.get("confirmtxnmessage") or data.get("inittxnmessage")),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=self.config.currency,
            financial_transaction_id=data.get("txnid"),
            raw=body,
        )
