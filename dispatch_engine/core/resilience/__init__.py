"""
Resilience Module - Admission and Retry

COMPONENTS:
===========
- AdmissionLimiter: concurrency cap + token-bucket burst control
    - LocalAdmissionLimiter: in-process counters
    - RedisAdmissionLimiter: counters shared across engine instances
- RetryPolicy: stateless exponential backoff decisions
"""

from .admission_limiter import (
    AdmissionLimiter,
    AdmissionToken,
    LocalAdmissionLimiter,
    PoolState,
    create_admission_limiter,
)
from .retry_policy import GiveUp, Retry, RetryDecision, RetryPolicy, compute_delay, decide

__all__ = [
    # Admission
    "AdmissionLimiter",
    "AdmissionToken",
    "LocalAdmissionLimiter",
    "PoolState",
    "create_admission_limiter",
    # Retry
    "GiveUp",
    "Retry",
    "RetryDecision",
    "RetryPolicy",
    "compute_delay",
    "decide",
]
