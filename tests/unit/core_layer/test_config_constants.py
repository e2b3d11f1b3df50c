"""
Unit Tests for Configuration Constants

Tests the enumerations and default values.
"""

import pytest

from dispatch_engine.core.config.constants import (
    DEFAULT_BASE_RETRY_DELAY_MS,
    DEFAULT_CONCURRENCY_CAP,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RATE_BUCKET_CAPACITY,
    JITTER_HIGH,
    JITTER_LOW,
    LATENCY_BUCKETS,
    FailureClass,
    Stage,
    TerminalStatus,
)


@pytest.mark.unit
class TestClassificationEnums:
    def test_only_fatal_is_not_retryable(self):
        assert FailureClass.THROTTLED.retryable is True
        assert FailureClass.TRANSIENT.retryable is True
        assert FailureClass.FATAL.retryable is False

    def test_terminal_statuses(self):
        assert {s.value for s in TerminalStatus} == {
            "succeeded",
            "failed_fatal",
            "failed_retry_exhausted",
            "cancelled",
        }

    def test_stage_values_are_unique(self):
        values = [stage.value for stage in Stage]
        assert len(set(values)) == len(values)


@pytest.mark.unit
class TestDefaults:
    def test_defaults_are_positive(self):
        for value in (DEFAULT_CONCURRENCY_CAP, DEFAULT_RATE_BUCKET_CAPACITY, DEFAULT_MAX_RETRIES, DEFAULT_BASE_RETRY_DELAY_MS):
            assert value > 0

    def test_jitter_range(self):
        assert 0 < JITTER_LOW < JITTER_HIGH <= 1.0

    def test_latency_buckets_sorted(self):
        assert list(LATENCY_BUCKETS) == sorted(LATENCY_BUCKETS)
        assert len(set(LATENCY_BUCKETS)) == len(LATENCY_BUCKETS)
