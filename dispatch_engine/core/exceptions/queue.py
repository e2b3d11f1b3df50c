"""
Buffer Exceptions

All exceptions related to the backpressure buffer.
"""

from dispatch_engine.core.exceptions.base import DispatchBaseError


class QueueError(DispatchBaseError):
    """Base exception for backpressure buffer errors."""
    pass


class QueueClosedError(QueueError):
    """Raised when a record is enqueued after the buffer was closed."""
    pass
