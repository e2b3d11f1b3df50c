"""
Exception Module

Structured exception hierarchy for the record-dispatch engine.

Module Structure:
-----------------
- **base.py**: DispatchBaseError base class + ConfigurationError
- **invocation.py**: Typed transport failures (Throttled, Transient, Fatal)
- **admission.py**: Admission limiter exceptions
- **queue.py**: Backpressure buffer exceptions
- **aggregation.py**: Outcome aggregation exceptions

Usage:
------
```python
from dispatch_engine.core.exceptions import ThrottledError, TransientError
```
"""

from dispatch_engine.core.exceptions.admission import AdmissionBackendError, AdmissionError
from dispatch_engine.core.exceptions.aggregation import (
    AggregationError,
    AggregatorClosedError,
    DuplicateOutcomeError,
)
from dispatch_engine.core.exceptions.base import ConfigurationError, DispatchBaseError
from dispatch_engine.core.exceptions.invocation import (
    FatalError,
    InvocationError,
    ThrottledError,
    TransientError,
)
from dispatch_engine.core.exceptions.queue import QueueClosedError, QueueError

__all__ = [
    # Base
    "DispatchBaseError",
    "ConfigurationError",
    # Invocation
    "InvocationError",
    "ThrottledError",
    "TransientError",
    "FatalError",
    # Admission
    "AdmissionError",
    "AdmissionBackendError",
    # Queue
    "QueueError",
    "QueueClosedError",
    # Aggregation
    "AggregationError",
    "DuplicateOutcomeError",
    "AggregatorClosedError",
]
