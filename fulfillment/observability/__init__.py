"""
Observability module - Logging, Metrics, and Tracing.
"""

from fulfillment.observability.logging import get_logger, log_context, setup_logging
from fulfillment.observability.metrics import metrics
from fulfillment.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
