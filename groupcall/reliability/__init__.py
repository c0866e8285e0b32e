"""
Reliability module: Bounded retries for conditional writes.
"""

from groupcall.reliability.retry import ConcurrencyRetryPolicy, calculate_backoff

__all__ = [
    "ConcurrencyRetryPolicy",
    "calculate_backoff",
]
