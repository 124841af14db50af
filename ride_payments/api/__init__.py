"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CheckStatusRequest,
    PayinRequest,
    PaymentStatusResponse,
    PayoutRequest,
    PayoutStatusResponse,
    RefundRequest,
    SeatReductionRefundRequest,
)

__all__ = [
    "app",
    "create_app",
    "CheckStatusRequest",
    "PayinRequest",
    "PaymentStatusResponse",
    "PayoutRequest",
    "PayoutStatusResponse",
    "RefundRequest",
    "SeatReductionRefundRequest",
]
