"""
API routes for payins, payouts, refunds, provider callbacks and monitoring.
"""
import json
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from ride_payments.core.enums import Provider, TransactionKind
from ride_payments.core.errors import RecordNotFoundError
from ride_payments.core.orchestrator import OrchestratorResponse, PaymentOrchestrator
from ride_payments.core.reconciliation import ReconciliationEngine, ReconciliationError
from ride_payments.database.connection import get_db
from ride_payments.integrations.base import ProviderTransportError
from ride_payments.integrations.webhook_handler import (
    CallbackHandler,
    CallbackValidationError,
    verify_mtn_signature,
)
from ride_payments.monitoring.health import HealthCheck

from .schemas import (
    BookingPayoutRequest,
    CallbackAckResponse,
    CheckStatusRequest,
    CheckStatusResponse,
    HealthCheckResponse,
    PayinRequest,
    PaymentStatusResponse,
    PayoutRequest,
    PayoutRetryResponse,
    PayoutStatusResponse,
    ReconciliationResponse,
    RefundRequest,
    SeatReductionRefundRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
payout_router = APIRouter(prefix="/payouts", tags=["payouts"])
refund_router = APIRouter(prefix="/refunds", tags=["refunds"])
transaction_router = APIRouter(prefix="/transactions", tags=["transactions"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


# ----------------------------------------------------------------------
# Dependencies (services are created in the application lifespan)
# ----------------------------------------------------------------------


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    """Orchestrator shared by all requests."""
    return request.app.state.orchestrator


def get_callback_handler(request: Request) -> CallbackHandler:
    """Callback handler shared by all webhook requests."""
    return request.app.state.callback_handler


def get_reconciliation_engine(request: Request) -> ReconciliationEngine:
    """Reconciliation engine used by the admin endpoint."""
    return request.app.state.reconciliation_engine


def get_health_check(request: Request) -> HealthCheck:
    """Health check service."""
    return request.app.state.health_check


def envelope_response(result: OrchestratorResponse) -> JSONResponse:
    """Send an orchestrator envelope with its own status code."""
    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.response))


# ----------------------------------------------------------------------
# Payins
# ----------------------------------------------------------------------


@payment_router.post(
    "/payin",
    summary="Collect a booking payment",
    description="Submit a payin; idempotent per (booking, idempotency key)",
)
async def initiate_payin(
    request: PayinRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Collect a payment from a passenger."""
    logger.info(
        "api_payin_request",
        booking_id=request.booking_id,
        amount=str(request.amount),
        provider=request.provider.value if request.provider else None,
    )
    result = await orchestrator.initiate_payin(
        db,
        booking_id=request.booking_id,
        amount=request.amount,
        phone_number=request.phone_number,
        idempotency_key=request.idempotency_key,
        provider=request.provider,
        user_id=request.user_id,
        currency=request.currency,
        reason=request.reason,
    )
    return envelope_response(result)


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment",
    description="Retrieve the stored state of a payment",
)
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Any:
    """Get payment by ID."""
    payment = await orchestrator.store.get_payment(db, payment_id)
    if payment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return payment


# ----------------------------------------------------------------------
# Payouts
# ----------------------------------------------------------------------


@payout_router.post(
    "",
    summary="Disburse driver earnings",
    description="Submit a payout; the record is written once the provider answers",
)
async def initiate_payout(
    request: PayoutRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Send a payout to a driver."""
    logger.info(
        "api_payout_request",
        driver_id=request.driver_id,
        booking_id=request.booking_id,
        amount=str(request.amount),
    )
    result = await orchestrator.initiate_payout(
        db,
        driver_id=request.driver_id,
        booking_id=request.booking_id,
        amount=request.amount,
        phone_number=request.phone_number,
        reason=request.reason,
        payment_id=request.payment_id,
        provider=request.provider,
        currency=request.currency,
    )
    return envelope_response(result)


@payout_router.post(
    "/booking",
    summary="Pay a driver for a booking",
    description="Disburse the booking fare minus transaction fee and commission",
)
async def initiate_booking_payout(
    request: BookingPayoutRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Send a driver the earnings of a completed booking."""
    logger.info(
        "api_booking_payout_request",
        booking_id=request.booking_id,
        driver_id=request.driver_id,
    )
    result = await orchestrator.initiate_booking_payout(
        db,
        booking_id=request.booking_id,
        driver_id=request.driver_id,
        phone_number=request.phone_number,
        provider=request.provider,
    )
    return envelope_response(result)


@payout_router.get(
    "/{payout_id}",
    response_model=PayoutStatusResponse,
    summary="Get payout",
    description="Retrieve a payout with its retry history",
)
async def get_payout(
    payout_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Any:
    """Get payout by ID."""
    payout = await orchestrator.store.get_payout(db, payout_id)
    if payout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout not found")
    return payout


@payout_router.post(
    "/{payout_id}/retry",
    response_model=PayoutRetryResponse,
    summary="Retry a failed payout",
    description="Resubmit a failed payout if it is retryable and out of cooldown",
)
async def retry_payout(
    payout_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Manually trigger the retry engine for one payout."""
    payout = await orchestrator.store.get_payout(db, payout_id)
    if payout is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payout not found")

    result = await orchestrator.retry_engine.retry_payout(db, payout)
    logger.info("api_payout_retry", payout_id=payout_id, outcome=result.outcome)
    return result.to_dict()


# ----------------------------------------------------------------------
# Refunds
# ----------------------------------------------------------------------


@refund_router.post(
    "",
    summary="Refund a payment",
    description="Refund part or all of a completed payment",
)
async def initiate_refund(
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Refund a payment."""
    logger.info(
        "api_refund_request",
        payment_id=str(request.payment_id),
        amount=str(request.amount),
    )
    result = await orchestrator.initiate_refund(
        db,
        payment_id=request.payment_id,
        booking_id=request.booking_id,
        amount=request.amount,
        reason=request.reason,
        phone_number=request.phone_number,
    )
    return envelope_response(result)


@refund_router.post(
    "/seat-reduction",
    summary="Refund removed seats",
    description="Refund (seats_before - seats_after) x price_per_seat",
)
async def refund_seat_reduction(
    request: SeatReductionRefundRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    """Refund the seats a passenger gave up."""
    logger.info(
        "api_seat_reduction_refund_request",
        payment_id=str(request.payment_id),
        seats_before=request.seats_before,
        seats_after=request.seats_after,
    )
    result = await orchestrator.refund_seat_reduction(
        db,
        payment_id=request.payment_id,
        booking_id=request.booking_id,
        seats_before=request.seats_before,
        seats_after=request.seats_after,
        price_per_seat=request.price_per_seat,
        phone_number=request.phone_number,
    )
    return envelope_response(result)


# ----------------------------------------------------------------------
# Status checks
# ----------------------------------------------------------------------


@transaction_router.post(
    "/check-status",
    response_model=CheckStatusResponse,
    summary="Check transaction status",
    description="Return the stored status, refreshing it from the provider while in flight",
)
async def check_status(
    request: CheckStatusRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Check a transaction by provider token or record id."""
    try:
        return await orchestrator.check_status(db, request.reference)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ProviderTransportError as e:
        logger.warning("api_check_status_provider_unreachable", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


# ----------------------------------------------------------------------
# Provider callbacks
# ----------------------------------------------------------------------


async def _handle_callback(
    request: Request,
    provider: Provider,
    db: AsyncSession,
    handler: CallbackHandler,
    kind: TransactionKind | None = None,
) -> Dict[str, Any]:
    body = await request.body()
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        logger.warning("api_callback_invalid_json", provider=provider.value)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    try:
        return await handler.handle(provider, payload, db, kind=kind)
    except CallbackValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


async def _check_mtn_signature(request: Request, handler: CallbackHandler) -> None:
    secret = handler.orchestrator.settings.mtn_webhook_secret
    if not secret:
        return
    body = await request.body()
    if not verify_mtn_signature(body, request.headers.get("X-MTN-Signature"), secret):
        logger.warning("api_mtn_signature_invalid")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")


@webhook_router.post(
    "/mtn",
    response_model=CallbackAckResponse,
    summary="MTN MoMo collection callback",
)
async def mtn_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    handler: CallbackHandler = Depends(get_callback_handler),
) -> Dict[str, Any]:
    """Handle MTN MoMo callbacks for payins and refunds."""
    await _check_mtn_signature(request, handler)
    return await _handle_callback(request, Provider.MTN, db, handler)


@webhook_router.post(
    "/mtn/payout",
    response_model=CallbackAckResponse,
    summary="MTN MoMo disbursement callback",
)
async def mtn_payout_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    handler: CallbackHandler = Depends(get_callback_handler),
) -> Dict[str, Any]:
    """Handle MTN MoMo disbursement callbacks."""
    await _check_mtn_signature(request, handler)
    return await _handle_callback(request, Provider.MTN, db, handler, TransactionKind.PAYOUT)


@webhook_router.post(
    "/mtn/refund",
    response_model=CallbackAckResponse,
    summary="MTN MoMo refund callback",
)
async def mtn_refund_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    handler: CallbackHandler = Depends(get_callback_handler),
) -> Dict[str, Any]:
    """Handle MTN MoMo refund callbacks."""
    await _check_mtn_signature(request, handler)
    return await _handle_callback(request, Provider.MTN, db, handler, TransactionKind.REFUND)


@webhook_router.post(
    "/orange",
    response_model=CallbackAckResponse,
    summary="Orange Money notification",
)
async def orange_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    handler: CallbackHandler = Depends(get_callback_handler),
) -> Dict[str, Any]:
    """Handle Orange Money notifications."""
    return await _handle_callback(request, Provider.ORANGE, db, handler)


@webhook_router.post(
    "/pawapay",
    response_model=CallbackAckResponse,
    summary="pawaPay callback",
)
async def pawapay_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    handler: CallbackHandler = Depends(get_callback_handler),
) -> Dict[str, Any]:
    """Handle pawaPay deposit, payout and refund callbacks."""
    return await _handle_callback(request, Provider.PAWAPAY, db, handler)


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Re-check stale in-flight transactions and retry eligible payouts now",
)
async def run_reconciliation(
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """Run one reconciliation sweep."""
    try:
        result = await engine.run_sweep()
    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        )
    logger.info(
        "api_reconciliation_completed",
        checked=result["checked"],
        updated=result["updated"],
    )
    return result


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Kubernetes liveness endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness check endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness check endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
