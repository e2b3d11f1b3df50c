"""
System Constants and Enumerations

This module defines engine-wide constants and enumerations used across
the record-dispatch engine.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for defaults and thresholds
- Type-safe enums for classification and state
"""

from enum import Enum

# ============================================================================
# Stage Identifiers (for structured logging)
# ============================================================================


class Stage(str, Enum):
    """
    Engine stages used in the ``stage`` field of log entries.

    Format: {PREFIX}_{DESCRIPTIVE_NAME}

    Examples:
        logger.info("Admission granted", stage=Stage.ADMISSION)
    """

    STARTUP = "0.0_STARTUP"
    SOURCE_READ = "1.0_SOURCE_READ"
    DISPATCH = "2.0_DISPATCH"
    ADMISSION = "3.0_ADMISSION"
    INVOCATION = "4.0_INVOCATION"
    AGGREGATION = "5.0_AGGREGATION"
    SHUTDOWN = "6.0_SHUTDOWN"

    RETRY = "R_RETRY_POLICY"
    BUFFER = "B_BACKPRESSURE_BUFFER"
    BATCH = "BC_BATCH_CONSUMER"
    CANCELLATION = "X_CANCELLATION"
    METRICS = "M_METRICS_COLLECTION"


# ============================================================================
# Classification
# ============================================================================


class FailureClass(str, Enum):
    """
    Three-way failure classification of one invocation attempt.

    THROTTLED: explicit overload signal from the endpoint (retryable)
    TRANSIENT: network / timeout class failure (retryable)
    FATAL: permanent failure (never retried)
    """

    THROTTLED = "throttled"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self is not FailureClass.FATAL


class AttemptOutcome(str, Enum):
    """Outcome of a single invocation attempt."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


class TerminalStatus(str, Enum):
    """
    Final, immutable classification of a record.

    FAILED_RETRY_EXHAUSTED is kept distinct from FAILED_FATAL so that the
    summary can tell overload from bad input.
    """

    SUCCEEDED = "succeeded"
    FAILED_FATAL = "failed_fatal"
    FAILED_RETRY_EXHAUSTED = "failed_retry_exhausted"
    CANCELLED = "cancelled"


class AdmissionBackend(str, Enum):
    """Where the admission limiter keeps its counters."""

    LOCAL = "local"
    REDIS = "redis"


# ============================================================================
# Defaults
# ============================================================================

DEFAULT_CONCURRENCY_CAP = 50
DEFAULT_RATE_BUCKET_CAPACITY = 1000
DEFAULT_REFILL_TOKENS = 500
DEFAULT_REFILL_INTERVAL_SECONDS = 60.0

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_RETRY_DELAY_MS = 100

DEFAULT_BATCH_SIZE = 10
DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_BUFFER_CAPACITY = 1000
DEFAULT_BUFFER_PARTITIONS = 4

# In-flight ceiling used when none is configured: IN_FLIGHT_CEILING_FACTOR x cap
IN_FLIGHT_CEILING_FACTOR = 2

# Jitter scales the computed delay uniformly within this range
JITTER_LOW = 0.5
JITTER_HIGH = 1.0

ADMISSION_KEY_PREFIX = "dispatch:admission"

# Shared admission slots expire after this long if their holder never releases them
ADMISSION_LEASE_SECONDS = 300.0

# Latency histogram buckets (seconds), shared by the summary and Prometheus
LATENCY_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
