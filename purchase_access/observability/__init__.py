"""
Observability module - Logging and Metrics.
"""

from purchase_access.observability.logging import get_logger, log_context, setup_logging
from purchase_access.observability.metrics import metrics

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
]
