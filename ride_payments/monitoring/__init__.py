"""Logging, prometheus metrics and health checks for the payment service."""
from .health import HealthCheck, HealthCheckError
from .logging import mask_phone, setup_logging
from .metrics import MetricsCollector, metrics

__all__ = [
    "HealthCheck",
    "HealthCheckError",
    "MetricsCollector",
    "mask_phone",
    "metrics",
    "setup_logging",
]
