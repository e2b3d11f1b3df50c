"""
Unit Tests for Core Exceptions

Tests the base error contract and the invocation error classes.
"""

import pytest

from dispatch_engine.core.config.constants import FailureClass
from dispatch_engine.core.exceptions import (
    AdmissionBackendError,
    AdmissionError,
    AggregationError,
    AggregatorClosedError,
    ConfigurationError,
    DispatchBaseError,
    DuplicateOutcomeError,
    FatalError,
    InvocationError,
    QueueClosedError,
    QueueError,
    ThrottledError,
    TransientError,
)


@pytest.mark.unit
class TestDispatchBaseError:
    """Test the base exception class."""

    def test_base_error_creation(self):
        error = DispatchBaseError("Test message")

        assert str(error) == "Test message"
        assert error.message == "Test message"
        assert error.details == {}
        assert error.record_id is None

    def test_details_are_copied(self):
        details = {"endpoint": "https://example.com"}
        error = DispatchBaseError("boom", details=details)
        details["endpoint"] = "changed"

        assert error.details["endpoint"] == "https://example.com"

    def test_to_dict(self):
        error = TransientError("Endpoint timed out", record_id="r-1", details={"timeout_seconds": 30})

        assert error.to_dict() == {
            "error_type": "TransientError",
            "message": "Endpoint timed out",
            "record_id": "r-1",
            "details": {"timeout_seconds": 30},
        }

    def test_with_context_chains(self):
        error = FatalError("bad payload").with_context(field="sku")

        assert isinstance(error, FatalError)
        assert error.details == {"field": "sku"}

    def test_repr(self):
        error = ConfigurationError("bad cap", record_id="r-2", details={"concurrency_cap": 0})

        assert repr(error) == "ConfigurationError(message='bad cap', record_id='r-2', details={'concurrency_cap': 0})"

    def test_from_exception(self):
        original = ConnectionResetError("peer reset")

        error = TransientError.from_exception(original, record_id="r-3", url="https://example.com")

        assert isinstance(error, TransientError)
        assert error.message == "peer reset"
        assert error.record_id == "r-3"
        assert error.details["original_error"] == "ConnectionResetError"
        assert error.details["url"] == "https://example.com"


@pytest.mark.unit
class TestInvocationErrors:
    @pytest.mark.parametrize(
        "error_class,failure_class",
        [
            (ThrottledError, FailureClass.THROTTLED),
            (TransientError, FailureClass.TRANSIENT),
            (FatalError, FailureClass.FATAL),
            (InvocationError, FailureClass.FATAL),
        ],
    )
    def test_failure_class(self, error_class, failure_class):
        assert error_class("x").failure_class is failure_class


@pytest.mark.unit
class TestHierarchy:
    @pytest.mark.parametrize(
        "error_class,parent",
        [
            (ConfigurationError, DispatchBaseError),
            (ThrottledError, InvocationError),
            (AdmissionBackendError, AdmissionError),
            (QueueClosedError, QueueError),
            (DuplicateOutcomeError, AggregationError),
            (AggregatorClosedError, AggregationError),
        ],
    )
    def test_inheritance(self, error_class, parent):
        assert issubclass(error_class, parent)
        assert issubclass(error_class, DispatchBaseError)
