"""
User notifications on terminal transitions.

Delivery belongs to another service; this module only hands messages over,
best-effort, without ever affecting the transition that triggered them.
"""
import asyncio
from typing import Any, Dict, Optional, Set

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

# Keeps fire-and-forget tasks referenced until they finish
_background_tasks: Set[asyncio.Task] = set()

FAILURE_MESSAGES = {
    "insufficient_funds": "Solde insuffisant sur votre compte mobile money.",
    "invalid_number": "Le numero de telephone n'est pas valide pour ce service.",
    "timeout": "La transaction a expire. Veuillez reessayer.",
    "cancelled": "La transaction a ete annulee.",
    "generic": "Le paiement a echoue. Veuillez reessayer plus tard.",
}


def user_failure_message(reason: Optional[str]) -> str:
    """
    Turn a provider failure reason into a message for the end user.

    Args:
        reason: Provider failure reason, any case or wording

    Returns:
        str: Localised user-facing message
    """
    text = (reason or "").upper()
    if any(k in text for k in ("NOT_ENOUGH_FUNDS", "INSUFFICIENT", "LOW_BALANCE", "NOT ENOUGH")):
        return FAILURE_MESSAGES["insufficient_funds"]
    if any(k in text for k in ("INVALID", "NOT_FOUND", "NOT FOUND", "PAYER_NOT", "PAYEE_NOT")):
        return FAILURE_MESSAGES["invalid_number"]
    if any(k in text for k in ("TIMEOUT", "EXPIRED", "TIMED OUT")):
        return FAILURE_MESSAGES["timeout"]
    if any(k in text for k in ("CANCEL", "REJECTED", "DECLINED")):
        return FAILURE_MESSAGES["cancelled"]
    return FAILURE_MESSAGES["generic"]


class NotificationDispatcher:
    """Interface for handing notifications to the delivery service."""

    async def send_notification(
        self, user_id: str, title: str, message: str, data: Dict[str, Any]
    ) -> None:
        """
        Deliver one notification.

        Args:
            user_id: Recipient
            title: Notification title
            message: Notification body
            data: Typed payload for the client (type, ids, amounts)
        """
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Dispatcher that only logs; used when no delivery service is configured."""

    async def send_notification(
        self, user_id: str, title: str, message: str, data: Dict[str, Any]
    ) -> None:
        """Log the notification."""
        logger.info(
            "notification_logged",
            user_id=user_id,
            title=title,
            notification_type=data.get("type"),
        )


class HttpNotificationDispatcher(NotificationDispatcher):
    """Posts notifications as JSON to the delivery service."""

    def __init__(self, url: str, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize HTTP dispatcher.

        Args:
            url: Delivery service endpoint
            http_client: Optional shared HTTP client
        """
        self.url = url
        self.http_client = http_client or httpx.AsyncClient(timeout=10.0)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def send_notification(
        self, user_id: str, title: str, message: str, data: Dict[str, Any]
    ) -> None:
        """Post the notification, retrying transport failures."""
        response = await self.http_client.post(
            self.url,
            json={"userId": user_id, "title": title, "message": message, "data": data},
        )
        response.raise_for_status()


def dispatch_in_background(
    dispatcher: Optional[NotificationDispatcher],
    user_id: Optional[str],
    title: str,
    message: str,
    data: Dict[str, Any],
) -> Optional[asyncio.Task]:
    """
    Schedule a notification without waiting for it.

    Failures are logged and never propagate to the caller.

    Returns:
        Optional[asyncio.Task]: The scheduled task, None if nothing was sent
    """
    if dispatcher is None or not user_id:
        return None

    async def _send() -> None:
        try:
            await dispatcher.send_notification(user_id, title, message, data)
        except Exception as e:
            logger.warning(
                "notification_dispatch_failed",
                user_id=user_id,
                notification_type=data.get("type"),
                error=str(e),
            )

    task = asyncio.create_task(_send())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def drain_background_notifications() -> None:
    """Wait for in-flight notifications (shutdown and tests)."""
    if _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)
