#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides metrics collection for the dispatch engine:
- One attempt counter + latency observation per invocation attempt
- Admission wait histogram and tokens-in-use gauge
- Terminal outcome counters
- Backpressure buffer depth

Architectural Decision: prometheus-client for industry-standard metrics
- Consumers (dashboards, cost models) scrape these; the engine only emits
- Histogram buckets for latency percentiles
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from dispatch_engine.core.config.constants import LATENCY_BUCKETS
from dispatch_engine.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# Invocation metrics
INVOCATION_ATTEMPTS = Counter(
    'dispatch_invocation_attempts_total',
    'Total invocation attempts',
    ['outcome', 'failure_class']
)

INVOCATION_LATENCY = Histogram(
    'dispatch_invocation_latency_seconds',
    'Latency of a single invocation attempt',
    ['outcome'],
    buckets=LATENCY_BUCKETS
)

BATCH_INVOCATIONS = Counter(
    'dispatch_batch_invocations_total',
    'Total batch invocations',
    ['mode']  # batch, sequential
)

RETRIES_SCHEDULED = Counter(
    'dispatch_retries_scheduled_total',
    'Retries scheduled by the retry policy',
    ['failure_class']
)

# Admission metrics
ADMISSION_WAIT = Histogram(
    'dispatch_admission_wait_seconds',
    'Time spent waiting for an admission token',
    buckets=(0.0001, 0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0)
)

TOKENS_IN_USE = Gauge(
    'dispatch_admission_tokens_in_use',
    'Admission tokens currently held',
    ['backend']
)

ADMISSION_FALLBACKS = Counter(
    'dispatch_admission_fallbacks_total',
    'Admissions served by the local fallback because the shared backend failed'
)

# Outcome metrics
RECORDS_TERMINAL = Counter(
    'dispatch_records_terminal_total',
    'Records that reached a terminal outcome',
    ['status']
)

RECORDS_IN_FLIGHT = Gauge(
    'dispatch_records_in_flight',
    'Records pulled from the source and not yet terminal'
)

# Buffer metrics
BUFFER_DEPTH = Gauge(
    'dispatch_buffer_depth',
    'Records waiting in the backpressure buffer',
    ['buffer']
)


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    Usage:
        metrics = get_metrics_collector()
        metrics.record_attempt("success", None, 0.042)
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self):
        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Invocation Metrics
    # =========================================================================

    def record_attempt(self, outcome: str, failure_class: str | None, latency_seconds: float) -> None:
        """Record one invocation attempt and its latency."""
        INVOCATION_ATTEMPTS.labels(outcome=outcome, failure_class=failure_class or "none").inc()
        INVOCATION_LATENCY.labels(outcome=outcome).observe(latency_seconds)

    def record_batch_invocation(self, mode: str) -> None:
        BATCH_INVOCATIONS.labels(mode=mode).inc()

    def record_retry_scheduled(self, failure_class: str) -> None:
        RETRIES_SCHEDULED.labels(failure_class=failure_class).inc()

    # =========================================================================
    # Admission Metrics
    # =========================================================================

    def record_admission_wait(self, wait_seconds: float) -> None:
        ADMISSION_WAIT.observe(wait_seconds)

    def set_tokens_in_use(self, backend: str, count: int) -> None:
        TOKENS_IN_USE.labels(backend=backend).set(count)

    def record_admission_fallback(self) -> None:
        ADMISSION_FALLBACKS.inc()

    # =========================================================================
    # Outcome Metrics
    # =========================================================================

    def record_terminal(self, status: str) -> None:
        RECORDS_TERMINAL.labels(status=status).inc()

    def increment_in_flight(self) -> None:
        RECORDS_IN_FLIGHT.inc()

    def decrement_in_flight(self) -> None:
        RECORDS_IN_FLIGHT.dec()

    # =========================================================================
    # Buffer Metrics
    # =========================================================================

    def record_buffer_depth(self, buffer_name: str, depth: int) -> None:
        BUFFER_DEPTH.labels(buffer=buffer_name).set(depth)

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST


# Global metrics collector
_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
