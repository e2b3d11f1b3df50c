"""Test data factories and transport stubs."""

from tests.test_fixtures.record_factory import RecordFactory
from tests.test_fixtures.transport_factory import (
    BlockingTransport,
    ScriptedBatchTransport,
    ScriptedTransport,
)

__all__ = ["BlockingTransport", "RecordFactory", "ScriptedBatchTransport", "ScriptedTransport"]
