"""
Observability module: Metrics and structured logging.
"""

from groupcall.observability.metrics import MetricsCollector, Counter, Histogram
from groupcall.observability.logging import (
    JsonFormatter,
    LogLevel,
    log_context,
    setup_logging,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Histogram",
    "JsonFormatter",
    "LogLevel",
    "log_context",
    "setup_logging",
]
