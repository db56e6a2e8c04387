"""
Observability module - Logging, Metrics, and Tracing.
"""

from botmeter.observability.logging import get_logger, log_context, setup_logging
from botmeter.observability.metrics import metrics
from botmeter.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
