"""
Engine Module - Dispatch orchestration

COMPONENTS:
===========
- DispatchEngine: public facade (run / cancel)
- DispatchLoop: drains the Source, bounds fan-out, handles cancellation
- InvocationExecutor: per-record and per-batch invocation with retries
- BatchConsumer: drains buffer partitions in decoupling mode
- OutcomeAggregator: thread-safe terminal outcome accounting
"""

from .aggregator import OutcomeAggregator, OutcomeSummary
from .batch_consumer import BatchConsumer
from .dispatch_engine import DispatchEngine
from .dispatch_loop import DispatchLoop, iterate_source
from .executor import InvocationExecutor, classify_failure

__all__ = [
    "BatchConsumer",
    "DispatchEngine",
    "DispatchLoop",
    "InvocationExecutor",
    "OutcomeAggregator",
    "OutcomeSummary",
    "classify_failure",
    "iterate_source",
]
