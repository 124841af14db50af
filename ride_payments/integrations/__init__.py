"""Provider adapters and inbound callback handling."""
from typing import Dict, Optional

import httpx

from ride_payments.config import Settings
from ride_payments.core.enums import Provider

from .base import (
    CircuitBreaker,
    ProviderAdapter,
    ProviderResult,
    ProviderStatus,
    ProviderTransportError,
)
from .mtn_client import MTNMoMoClient
from .orange_client import OrangeMoneyClient
from .pawapay_client import PawaPayClient

ADAPTER_CLASSES = {
    Provider.MTN: MTNMoMoClient,
    Provider.ORANGE: OrangeMoneyClient,
    Provider.PAWAPAY: PawaPayClient,
}


def build_adapters(
    settings: Settings, http_client: Optional[httpx.AsyncClient] = None
) -> Dict[Provider, ProviderAdapter]:
    """
    Instantiate one adapter per configured provider.

    Args:
        settings: Application settings
        http_client: Optional HTTP client shared by all adapters

    Returns:
        Dict[Provider, ProviderAdapter]: Adapter per provider
    """
    adapters: Dict[Provider, ProviderAdapter] = {}
    for provider, config in settings.provider_configs().items():
        adapters[provider] = ADAPTER_CLASSES[provider](
            config,
            http_client=http_client,
            timeout=settings.provider_request_timeout,
            circuit_breaker=CircuitBreaker(
                provider,
                failure_threshold=settings.circuit_breaker_failure_threshold,
                timeout=settings.circuit_breaker_timeout,
            ),
        )
    return adapters


__all__ = [
    "CircuitBreaker",
    "MTNMoMoClient",
    "OrangeMoneyClient",
    "PawaPayClient",
    "ProviderAdapter",
    "ProviderResult",
    "ProviderStatus",
    "ProviderTransportError",
    "build_adapters",
]
