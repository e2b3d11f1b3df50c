"""
Aggregation Exceptions

Raised when the one-terminal-outcome-per-record contract is broken.
"""

from dispatch_engine.core.exceptions.base import DispatchBaseError


class AggregationError(DispatchBaseError):
    """Base exception for outcome aggregation errors."""
    pass


class DuplicateOutcomeError(AggregationError):
    """Raised when a second terminal outcome is reported for the same record."""
    pass


class AggregatorClosedError(AggregationError):
    """Raised when an outcome is reported after finalize()."""
    pass
