"""
Record Dispatch Engine

Drains a record Source and delivers every record to a rate-limited remote
endpoint under a concurrency cap and a token-bucket burst limit, retrying
throttled and transient failures with exponential backoff.

    from dispatch_engine import DispatchEngine, DispatchConfig, Record

    engine = DispatchEngine(transport, DispatchConfig.from_settings())
    summary = await engine.run([Record("r-1", b"{}")])
"""

from dispatch_engine.core.config.dispatch_config import DispatchConfig
from dispatch_engine.core.config.constants import FailureClass, TerminalStatus
from dispatch_engine.core.exceptions import (
    ConfigurationError,
    DispatchBaseError,
    FatalError,
    ThrottledError,
    TransientError,
)
from dispatch_engine.core.models import MalformedRecord, Record, RecordOutcome
from dispatch_engine.engine.aggregator import OutcomeSummary
from dispatch_engine.engine.dispatch_engine import DispatchEngine

__version__ = "1.0.0"

__all__ = [
    "ConfigurationError",
    "DispatchBaseError",
    "DispatchConfig",
    "DispatchEngine",
    "FailureClass",
    "FatalError",
    "MalformedRecord",
    "OutcomeSummary",
    "Record",
    "RecordOutcome",
    "TerminalStatus",
    "ThrottledError",
    "TransientError",
]
