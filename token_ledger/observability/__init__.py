"""
Observability module - Logging, Metrics, and Tracing.
"""

from token_ledger.observability.logging import get_logger, setup_logging
from token_ledger.observability.metrics import metrics
from token_ledger.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
