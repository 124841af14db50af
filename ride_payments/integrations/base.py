"""
Provider adapter contract and shared HTTP plumbing.

Implements:
- Uniform payin/payout/refund/check_status capability set
- One outbound request per submission attempt (no internal retries)
- Request timeouts and a per-provider circuit breaker
- Transport errors raised, provider rejections returned as failed results
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from ride_payments.config import ProviderConfig
from ride_payments.core.enums import Provider, TransactionKind
from ride_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ProviderTransportError(Exception):
    """Raised when a provider cannot be reached (timeout, connection error, open circuit)."""

    def __init__(self, message: str, provider: Provider, operation: str):
        """
        Initialize transport error.

        Args:
            message: Error message
            provider: Provider that could not be reached
            operation: Operation being attempted
        """
        super().__init__(message)
        self.provider = provider
        self.operation = operation


class ProviderAuthError(Exception):
    """Raised when a provider refuses to issue an access token."""

    pass


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a submission (payin, payout or refund)."""

    success: bool
    verification_token: Optional[str]
    message: str
    provider_status: Optional[str] = None
    status_code: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderStatus:
    """Provider-native view of a transaction returned by ``check_status``."""

    provider_status: Optional[str]
    reason: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    financial_transaction_id: Optional[str] = None
    found: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Stops sending requests to a provider that keeps failing at the
    transport level, and tries it again after a timeout.
    """

    def __init__(
        self,
        provider: Provider,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider: Provider guarded by this breaker
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self, operation: str) -> None:
        """
        Check whether a call may go out.

        Raises:
            ProviderTransportError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise ProviderTransportError(
                    f"{self.provider.value} circuit breaker is open",
                    self.provider,
                    operation,
                )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider.value,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider.value, state)
        logger.info("circuit_breaker_state_changed", provider=self.provider.value, state=state)


class ProviderAdapter(ABC):
    """
    Base class for mobile-money provider adapters.

    Subclasses translate the uniform capability set into one provider's
    authentication scheme and wire format. Phone numbers reach adapters
    already normalised to ``237XXXXXXXXX``.
    """

    provider: Provider

    def __init__(
        self,
        config: ProviderConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize provider adapter.

        Args:
            config: Provider connection settings
            http_client: Optional shared HTTP client (one is created if omitted)
            timeout: Per-request timeout in seconds
            circuit_breaker: Optional circuit breaker
        """
        self.config = config
        self.timeout = timeout
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.provider)

    @property
    def reliable_callbacks(self) -> bool:
        """Whether this provider's callbacks can be relied upon."""
        return self.config.reliable_callbacks

    @abstractmethod
    async def payin(self, phone: str, amount: Decimal, reason: str) -> ProviderResult:
        """Collect ``amount`` from ``phone``."""

    @abstractmethod
    async def payout(
        self, phone: str, amount: Decimal, reason: str, currency: Optional[str] = None
    ) -> ProviderResult:
        """Disburse ``amount`` to ``phone``."""

    @abstractmethod
    async def refund(
        self,
        original_token: str,
        amount: Decimal,
        reason: str,
        phone: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> ProviderResult:
        """Reverse ``amount`` of the collection identified by ``original_token``."""

    @abstractmethod
    async def check_status(
        self, token: str, kind: TransactionKind = TransactionKind.PAYIN
    ) -> ProviderStatus:
        """Fetch the provider-native status of a transaction."""

    async def _request(
        self, operation: str, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        """
        Send one HTTP request to the provider.

        Args:
            operation: Operation name for logs and metrics
            method: HTTP method
            url: Absolute URL
            **kwargs: Passed to ``httpx.AsyncClient.request``

        Returns:
            httpx.Response: Provider response, whatever its status code

        Raises:
            ProviderTransportError: On timeout, connection failure or open circuit
        """
        self.circuit_breaker.before_call(operation)
        kwargs.setdefault("timeout", self.timeout)
        start_time = time.time()

        try:
            response = await self.http_client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            duration = time.time() - start_time
            self.circuit_breaker.on_failure()
            metrics.record_provider_call(
                self.provider.value, operation, "transport_error", duration
            )
            logger.error(
                "provider_transport_error",
                provider=self.provider.value,
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderTransportError(
                f"{self.provider.value} {operation} failed: {type(e).__name__}",
                self.provider,
                operation,
            ) from e

        duration = time.time() - start_time
        if response.status_code >= 500:
            self.circuit_breaker.on_failure()
        else:
            self.circuit_breaker.on_success()
        metrics.record_provider_call(
            self.provider.value,
            operation,
            "ok" if response.is_success else "rejected",
            duration,
        )
        logger.info(
            "provider_response_received",
            provider=self.provider.value,
            operation=operation,
            status_code=response.status_code,
            duration_seconds=duration,
        )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        """Decode a JSON body, tolerating empty or non-JSON responses."""
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {"raw_body": response.text}
        return body if isinstance(body, dict) else {"data": body}

    async def close(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self.http_client.aclose()
