"""
InvoiceSync Resilience — Fault Tolerance Primitives.

- retry_async / try_with_retry: classify and retry transient remote failures
- SingleFlight: one in-flight execution per key (OAuth refresh)
- QuarantineQueue: park records that fail mapping or validation
"""
from sync_core.resilience.quarantine import (
    QuarantinedRecord,
    QuarantineQueue,
    QuarantineStats,
    QuarantineStatus,
)
from sync_core.resilience.retry import (
    RetryOutcome,
    RetryPolicy,
    is_retryable,
    retry_async,
    try_with_retry,
)
from sync_core.resilience.single_flight import SingleFlight

__all__ = [
    # Quarantine
    "QuarantinedRecord",
    "QuarantineQueue",
    "QuarantineStats",
    "QuarantineStatus",
    # Retry
    "RetryOutcome",
    "RetryPolicy",
    "is_retryable",
    "retry_async",
    "try_with_retry",
    # Single-flight
    "SingleFlight",
]
