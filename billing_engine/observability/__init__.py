"""
Observability module - Logging, Metrics, and Tracing.
"""

from billing_engine.observability.logging import get_logger, log_context, setup_logging
from billing_engine.observability.metrics import metrics
from billing_engine.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
