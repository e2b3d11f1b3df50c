"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.
"""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dispatch_engine.core.config.dispatch_config import DispatchConfig  # noqa: E402
from dispatch_engine.infrastructure.monitoring.metrics_collector import MetricsCollector  # noqa: E402
from tests.test_fixtures import RecordFactory  # noqa: E402


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Manually advanced monotonic clock for token-bucket tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def fast_config():
    """
    Configuration with millisecond-scale delays and no jitter.

    Bucket is large and refills fast so admission never throttles unless
    a test asks for it.
    """
    return DispatchConfig(
        concurrency_cap=4,
        rate_bucket_capacity=10_000,
        refill_tokens=10_000,
        refill_interval_seconds=1.0,
        max_retries=3,
        base_retry_delay_ms=1,
        jitter=False,
        batch_size=3,
        poll_interval_ms=10,
        buffer_capacity=8,
        buffer_partitions=2,
    )


@pytest.fixture
def mock_redis_client():
    """
    Mock redis.asyncio client.

    ``eval`` grants every acquisition and reports one token in use.
    """
    redis = AsyncMock()
    redis.eval = AsyncMock(return_value=[1, 0])
    redis.aclose = AsyncMock()
    return redis


# ============================================================================
# Mock Infrastructure Fixtures
# ============================================================================


@pytest.fixture
def mock_metrics():
    """MetricsCollector mock so tests can assert on emitted events."""
    return MagicMock(spec=MetricsCollector)


@pytest.fixture
def record_factory():
    return RecordFactory
