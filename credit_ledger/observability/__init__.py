"""
Observability module - Logging, Metrics, and Tracing.
"""

from credit_ledger.observability.logging import get_logger, setup_logging
from credit_ledger.observability.metrics import metrics
from credit_ledger.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
